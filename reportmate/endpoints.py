"""
Generic cached bulk endpoint, instantiated once per logical endpoint.

Each endpoint is an EndpointPolicy (TTL, fan-out knobs, field fallbacks)
plus a document source and an optional flattening step. Serving a request
is the same for all of them: cache lookup, coalesced refresh on miss,
stale fallback on failure.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from config.settings import Settings
from reportmate.aggregator import flatten, normalize_application
from reportmate.cache import CacheManager, CacheMeta, CacheResult, EndpointPolicy, get_policy
from reportmate.db import APPLICATIONS_QUERY, DatabaseRowSource, application_row_to_document
from reportmate.sources import BulkListSource, DatabaseSource, DocumentSource, FanOutSource
from reportmate.upstream import DEVICES_PATH, UpstreamClient

logger = logging.getLogger("endpoints")

Record = Dict[str, Any]
Aggregate = Callable[[Sequence[Mapping[str, Any]]], List[Record]]

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class BulkEndpoint:
    """One cached aggregate: a source, an optional aggregation, a policy."""

    def __init__(
        self,
        policy: EndpointPolicy,
        source: DocumentSource,
        aggregate: Optional[Aggregate] = None,
    ):
        self.policy = policy
        self.source = source
        self.aggregate = aggregate

    @property
    def key(self) -> str:
        return self.policy.name

    def refresh(self, cancel: Optional[threading.Event] = None) -> List[Record]:
        """Run the pipeline once: load documents, then flatten them if configured."""
        batch = self.source.load(cancel=cancel)
        if batch.failed:
            logger.warning(
                f"[{self.key}] {len(batch.failed)} of {batch.total} devices failed and were skipped"
            )
        if self.aggregate is None:
            return list(batch.succeeded)
        return self.aggregate(batch.succeeded)

    def serve(
        self,
        manager: CacheManager,
        force_refresh: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> CacheResult:
        return manager.get(
            self.key,
            lambda: self.refresh(cancel=cancel),
            ttl_seconds=self.policy.ttl_seconds,
            force_refresh=force_refresh,
        )


def _flattener(policy: EndpointPolicy, normalize=None) -> Aggregate:
    def aggregate(documents):
        return flatten(documents, policy.collection_fields, normalize=normalize)
    return aggregate


def build_endpoints(
    settings: Settings,
    client: UpstreamClient,
    row_source: Optional[DatabaseRowSource] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> Dict[str, BulkEndpoint]:
    """
    Wire every bulk endpoint.

    The applications aggregate reads the database when one is configured
    and fans out to the upstream otherwise.
    """
    def fanout(policy: EndpointPolicy) -> FanOutSource:
        return FanOutSource(
            client,
            batch_size=policy.batch_size,
            item_timeout=policy.item_timeout,
            batch_pause=policy.batch_pause,
            sleep=sleep,
        )

    applications = get_policy("applications", {
        "batch_size": settings.fanout_batch_size,
        "item_timeout": settings.fanout_item_timeout,
        "batch_pause": settings.fanout_batch_pause,
    })
    inventory = get_policy("inventory")
    hardware = get_policy("hardware")

    if row_source is not None:
        applications_source: DocumentSource = DatabaseSource(
            row_source, APPLICATIONS_QUERY, application_row_to_document
        )
    else:
        applications_source = fanout(applications)

    endpoints = [
        BulkEndpoint(get_policy("devices"), BulkListSource(client, DEVICES_PATH, keys=("devices",))),
        BulkEndpoint(
            applications,
            applications_source,
            aggregate=_flattener(applications, normalize=normalize_application),
        ),
        BulkEndpoint(inventory, fanout(inventory), aggregate=_flattener(inventory)),
        BulkEndpoint(hardware, fanout(hardware), aggregate=_flattener(hardware)),
        BulkEndpoint(
            get_policy("installs"),
            BulkListSource(client, "/api/devices/installs", keys=("devices", "installs")),
        ),
        BulkEndpoint(
            get_policy("events"),
            BulkListSource(client, "/api/events", keys=("events",), params={"limit": settings.events_limit}),
        ),
    ]
    return {endpoint.key: endpoint for endpoint in endpoints}


def bulk_response(
    result: CacheResult,
    items: List[Mapping[str, Any]],
    filter_applied: bool = False,
) -> JSONResponse:
    """JSON body with cache metadata plus the X-Data-Source family of headers."""
    meta = CacheMeta.from_result(result)
    headers = {
        **NO_STORE_HEADERS,
        "X-Data-Source": result.source.value,
        "X-Fetched-At": meta.last_updated,
        "X-Total-Records": str(len(items)),
        "X-Filter-Applied": str(filter_applied).lower(),
    }
    body: Dict[str, Any] = {
        "items": items,
        "total": len(items),
        "meta": meta.to_dict(),
    }
    if result.stale_error:
        body["meta"]["staleReason"] = result.stale_error
    return JSONResponse(content=jsonable_encoder(body), headers=headers)


def options_response(result: CacheResult, body: Dict[str, Any]) -> JSONResponse:
    """Filter options derived from ``result``, tagged with where that aggregate came from."""
    meta = CacheMeta.from_result(result)
    headers = {
        **NO_STORE_HEADERS,
        "X-Data-Source": result.source.value,
        "X-Fetched-At": meta.last_updated,
    }
    return JSONResponse(content=jsonable_encoder({**body, "meta": meta.to_dict()}), headers=headers)
