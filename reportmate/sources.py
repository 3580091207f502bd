"""
Document sources feeding the bulk endpoints.

A source produces the per-device documents (or already-flat records) that
the aggregator turns into a cached payload:

- FanOutSource: list devices, then fetch each device's detail document
- BulkListSource: one upstream call that already returns every record
- DatabaseSource: rows from a read query, shaped into documents
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError

from reportmate.db import DatabaseRowSource
from reportmate.errors import UpstreamListError
from reportmate.extractors import entity_id
from reportmate.fanout import BatchResult, FanOutFetcher
from reportmate.upstream import DEVICES_PATH, UpstreamClient

logger = logging.getLogger("sources")


class DocumentSource(Protocol):
    """Anything that can load documents for one refresh."""

    def load(self, cancel: Optional[threading.Event] = None) -> BatchResult:
        ...


class FanOutSource:
    """
    List endpoint discovery followed by a batched per-device fan-out.

    Only the discovery call can fail the refresh; detail failures end up
    in ``BatchResult.failed``.
    """

    def __init__(
        self,
        client: UpstreamClient,
        batch_size: int = 10,
        item_timeout: float = 30.0,
        batch_pause: float = 0.1,
        list_path: str = DEVICES_PATH,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.client = client
        self.list_path = list_path
        fetcher_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.fetcher = FanOutFetcher(
            client.get_detail,
            batch_size=batch_size,
            item_timeout=item_timeout,
            batch_pause=batch_pause,
            **fetcher_kwargs,
        )

    def discover(self) -> List[str]:
        """Device identifiers from the list endpoint, in upstream order."""
        entries = self.client.list_records(self.list_path, keys=("devices",))
        ids: List[str] = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            eid = entity_id(entry)
            if eid:
                ids.append(eid)
            else:
                logger.warning(f"Skipping list entry without an identifier: {sorted(entry)[:5]}")
        return ids

    def load(self, cancel: Optional[threading.Event] = None) -> BatchResult:
        ids = self.discover()
        result = self.fetcher.fetch_all(ids, self.client.detail_url, cancel=cancel)
        # Detail documents do not always echo the serial the list gave us
        result.succeeded = [
            _with_serial(document, eid)
            for eid, document in zip(result.succeeded_ids, result.succeeded)
        ]
        return result


def _with_serial(document: Dict[str, Any], eid: str) -> Dict[str, Any]:
    if document.get("serialNumber") or document.get("serial_number"):
        return document
    return {"serialNumber": eid, **document}


class BulkListSource:
    """A single upstream call returning flat records (bare array or wrapped)."""

    def __init__(
        self,
        client: UpstreamClient,
        path: str,
        keys: Sequence[str] = ("devices",),
        params: Optional[Dict[str, Any]] = None,
    ):
        self.client = client
        self.path = path
        self.keys = tuple(keys)
        self.params = params

    def load(self, cancel: Optional[threading.Event] = None) -> BatchResult:
        records = self.client.list_records(self.path, keys=self.keys, params=self.params)
        rows = [r for r in records if isinstance(r, dict)]
        return BatchResult(succeeded=rows, total=len(records))


class DatabaseSource:
    """Documents built from database rows via ``fetch_rows(query)``."""

    def __init__(
        self,
        rows: DatabaseRowSource,
        query: str,
        to_document: Callable[[Mapping[str, Any]], Dict[str, Any]],
    ):
        self.rows = rows
        self.query = query
        self.to_document = to_document

    def load(self, cancel: Optional[threading.Event] = None) -> BatchResult:
        try:
            rows = self.rows.fetch_rows(self.query)
        except SQLAlchemyError as e:
            logger.error(f"Database query failed: {e}")
            raise UpstreamListError(details=f"Database query failed: {e}") from e
        return BatchResult(succeeded=[self.to_document(row) for row in rows], total=len(rows))
