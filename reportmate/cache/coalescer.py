"""
Request coalescing so concurrent cache misses share one refresh.

When several requests find the same key expired at once, only the first
runs the refresh pipeline; the rest wait for it and receive the same
payload or the same exception.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRefresh:
    """Handle for a refresh that waiters subscribe to."""
    done: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    waiter_count: int = 0


class RequestCoalescer:
    """
    Single-flight execution keyed by cache key.

    Usage:
        coalescer = RequestCoalescer()
        payload = coalescer.run("applications", refresh_applications)
    """

    def __init__(self, timeout: float = 60.0):
        """
        Args:
            timeout: Max seconds a waiter blocks on someone else's refresh
        """
        self._in_flight: Dict[str, InFlightRefresh] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._coalesced_total = 0

    def run(self, key: str, refresh_fn: Callable[[], Any]) -> Any:
        """
        Join the in-flight refresh for ``key`` or start one.

        Raises:
            TimeoutError: If the in-flight refresh outlives the wait timeout
            Exception: Whatever refresh_fn raised, re-raised in every caller
        """
        with self._lock:
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                in_flight.waiter_count += 1
                self._coalesced_total += 1
                is_initiator = False
                logger.debug(f"Joining refresh for {key} (waiters: {in_flight.waiter_count})")
            else:
                in_flight = InFlightRefresh()
                self._in_flight[key] = in_flight
                is_initiator = True
                logger.debug(f"Starting refresh for {key}")

        if is_initiator:
            try:
                in_flight.result = refresh_fn()
            except Exception as e:
                in_flight.error = e
            finally:
                with self._lock:
                    self._in_flight.pop(key, None)
                in_flight.done.set()
        elif not in_flight.done.wait(timeout=self._timeout):
            logger.error(f"Timed out waiting on refresh for {key}")
            raise TimeoutError(f"Refresh for {key} did not finish within {self._timeout}s")

        if in_flight.error is not None:
            raise in_flight.error
        return in_flight.result

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_refreshes": len(self._in_flight),
                "active_keys": sorted(self._in_flight),
                "coalesced_total": self._coalesced_total,
            }
