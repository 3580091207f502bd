"""
Batched fan-out fetch of per-device detail documents.

Batches run one after another; the devices inside a batch are fetched in
parallel on a thread pool sized to the batch. A device that times out or
errors is recorded as failed and skipped, it never aborts the batch.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from reportmate.errors import FetchCancelled, UpstreamDetailError

logger = logging.getLogger("fanout")

FetchJson = Callable[[str, float], Any]


@dataclass(frozen=True)
class FetchTask:
    """One device detail request inside a batch."""
    entity_id: str
    url: str


@dataclass(frozen=True)
class FailedFetch:
    entity_id: str
    error: str


@dataclass
class BatchResult:
    """Outcome of a fan-out: successful documents plus failures with reasons."""
    succeeded: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[FailedFetch] = field(default_factory=list)
    total: int = 0
    succeeded_ids: List[str] = field(default_factory=list)

    @property
    def failed_ids(self) -> List[str]:
        return [f.entity_id for f in self.failed]


def describe_failure(exc: BaseException, timeout: float) -> str:
    """Short reason string for a failed device fetch."""
    if isinstance(exc, requests.Timeout):
        return f"timed out after {timeout}s"
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return f"HTTP {exc.response.status_code}"
    if isinstance(exc, UpstreamDetailError):
        return exc.details or exc.error
    if isinstance(exc, ValueError):
        return f"invalid JSON: {exc}"
    return f"{type(exc).__name__}: {exc}"


class FanOutFetcher:
    """
    Fetch many device documents with bounded concurrency.

    Usage:
        fetcher = FanOutFetcher(client.get_detail, batch_size=10)
        result = fetcher.fetch_all(serials, client.detail_url)
    """

    def __init__(
        self,
        fetch_json: FetchJson,
        batch_size: int = 10,
        item_timeout: float = 30.0,
        batch_pause: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            fetch_json: Callable(url, timeout) returning the decoded document
            batch_size: Devices fetched concurrently per batch
            item_timeout: Per-device timeout in seconds
            batch_pause: Seconds to pause between batches (not after the last)
            sleep: Pause function, replaceable in tests
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.fetch_json = fetch_json
        self.batch_size = batch_size
        self.item_timeout = item_timeout
        self.batch_pause = batch_pause
        self._sleep = sleep

    def fetch_all(
        self,
        entity_ids: Sequence[str],
        url_for: Callable[[str], str],
        cancel: Optional[threading.Event] = None,
    ) -> BatchResult:
        """
        Fetch every entity's document.

        Args:
            entity_ids: Device identifiers in the order the list endpoint gave them
            url_for: Builds the detail URL for one identifier
            cancel: When set, the fan-out stops and partial results are discarded

        Returns:
            BatchResult with ``succeeded`` in input order

        Raises:
            FetchCancelled: If ``cancel`` was set before the fan-out finished
        """
        result = BatchResult(total=len(entity_ids))
        batches = [
            entity_ids[i:i + self.batch_size]
            for i in range(0, len(entity_ids), self.batch_size)
        ]

        for number, batch in enumerate(batches, start=1):
            self._check_cancelled(cancel)
            tasks = [FetchTask(entity_id=eid, url=url_for(eid)) for eid in batch]
            succeeded, failed = self._run_batch(tasks)
            for eid, document in succeeded:
                result.succeeded_ids.append(eid)
                result.succeeded.append(document)
            result.failed.extend(failed)
            logger.debug(
                f"Batch {number}/{len(batches)}: {len(succeeded)} ok, {len(failed)} failed"
            )

            if number < len(batches) and self.batch_pause > 0:
                if cancel is not None:
                    cancel.wait(self.batch_pause)
                else:
                    self._sleep(self.batch_pause)

        self._check_cancelled(cancel)

        if result.failed:
            logger.warning(
                f"Fan-out finished with {len(result.failed)}/{result.total} failures: "
                f"{', '.join(result.failed_ids[:10])}"
            )
        else:
            logger.info(f"Fan-out fetched {len(result.succeeded)} documents")
        return result

    def _run_batch(self, tasks: List[FetchTask]):
        documents: List[Optional[Dict[str, Any]]] = [None] * len(tasks)
        failures: Dict[int, FailedFetch] = {}

        # Not a context manager: a hung request must not hold up the batch past its deadline
        executor = ThreadPoolExecutor(
            max_workers=len(tasks),
            thread_name_prefix="fanout",
        )
        try:
            futures = {
                executor.submit(self.fetch_json, task.url, self.item_timeout): index
                for index, task in enumerate(tasks)
            }
            done, not_done = wait(futures, timeout=self.item_timeout)

            for future in not_done:
                index = futures[future]
                task = tasks[index]
                future.cancel()
                logger.warning(f"Fetch for {task.entity_id} exceeded {self.item_timeout}s")
                failures[index] = FailedFetch(task.entity_id, f"timed out after {self.item_timeout}s")

            for future in done:
                index = futures[future]
                task = tasks[index]
                try:
                    document = future.result()
                except Exception as e:
                    reason = describe_failure(e, self.item_timeout)
                    logger.warning(f"Failed to fetch device {task.entity_id}: {reason}")
                    failures[index] = FailedFetch(task.entity_id, reason)
                    continue
                if not isinstance(document, dict):
                    logger.warning(f"Unexpected document type for {task.entity_id}: {type(document).__name__}")
                    failures[index] = FailedFetch(task.entity_id, "unexpected document shape")
                    continue
                documents[index] = document
        finally:
            executor.shutdown(wait=False)

        succeeded = [
            (tasks[index].entity_id, doc)
            for index, doc in enumerate(documents)
            if doc is not None
        ]
        failed = [failures[index] for index in sorted(failures)]
        return succeeded, failed

    @staticmethod
    def _check_cancelled(cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            logger.info("Fan-out cancelled, discarding partial results")
            raise FetchCancelled(details="Refresh abandoned before completion")
