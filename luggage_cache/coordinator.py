"""Get-or-compute access to the LLM with caching and per-key request deduplication.

Every cache miss for a key starts at most one computation at a time. The
computation runs on a bounded thread pool, and all callers for that key wait
on the same shared future, including the caller that started it. Each caller
waits through its own event, so a caller-local timeout or cancellation
abandons only that caller's wait; the computation continues and still
populates the cache for later callers.
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from luggage_cache.cache.models import CacheCategory
from luggage_cache.cache.store import CacheStore
from luggage_cache.config import CoordinatorConfig
from luggage_cache.errors import CacheEntryTooLarge, CacheStoreIOError, RequestCancelled, RequestTimeout
from luggage_cache.monitor import PerformanceMonitor, RequestOutcome

logger = logging.getLogger(__name__)

ComputeFn = Callable[[], Any]


class Degraded:
    """Fallback payload a compute function returns instead of raising.

    Degraded results reach every caller with status ``degraded`` but are only
    written to the cache when the coordinator runs with
    ``cache_degraded_results=True``.
    """

    __slots__ = ("value", "reason")

    def __init__(self, value: bytes, reason: Optional[str] = None):
        self.value = value
        self.reason = reason

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Degraded) and other.value == self.value and other.reason == self.reason

    def __repr__(self) -> str:
        return f"Degraded({self.value!r}, reason={self.reason!r})"


class ResultStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    ERROR = "error"


@dataclass(frozen=True)
class RequestResult:
    key: str
    status: ResultStatus
    value: Optional[bytes] = None
    error: Optional[BaseException] = None
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.status != ResultStatus.ERROR

    @property
    def degraded(self) -> bool:
        return self.status == ResultStatus.DEGRADED

    def unwrap(self) -> bytes:
        """Return the payload, or raise the error this request ended with."""
        if self.error is not None:
            raise self.error
        return self.value


@dataclass(frozen=True)
class BatchItem:
    key: str
    category: Union[str, CacheCategory]
    compute_fn: ComputeFn
    ttl: Optional[float] = None


class CancellationToken:
    """Caller-owned signal that abandons the caller's own wait."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


def _chain(source: Future) -> Future:
    """Return a caller-owned future that mirrors ``source``; cancelling it leaves ``source`` alone."""
    target: Future = Future()

    def _copy(done: Future) -> None:
        if not target.set_running_or_notify_cancel():
            return
        error = done.exception()
        if error is not None:
            target.set_exception(error)
        else:
            target.set_result(done.result())

    source.add_done_callback(_copy)
    return target


def _served_from_cache(future: Future) -> bool:
    return future.done() and future.exception() is None and future.result().from_cache


class RequestCoordinator:
    """Combines the CacheStore, the in-flight registry and the PerformanceMonitor."""

    def __init__(
        self,
        store: CacheStore,
        monitor: Optional[PerformanceMonitor] = None,
        max_concurrent_requests: int = 3,
        default_timeout_seconds: Optional[float] = None,
        cache_degraded_results: bool = False,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        if max_concurrent_requests <= 0:
            raise ValueError(f"max_concurrent_requests must be positive (received {max_concurrent_requests}).")
        self.store = store
        self.monitor = monitor if monitor is not None else PerformanceMonitor()
        self.default_timeout_seconds = default_timeout_seconds
        self.cache_degraded_results = cache_degraded_results
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_concurrent_requests, thread_name_prefix="ai-request"
        )
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        store: CacheStore,
        monitor: Optional[PerformanceMonitor],
        config: CoordinatorConfig,
    ) -> "RequestCoordinator":
        return cls(
            store,
            monitor,
            max_concurrent_requests=config.max_concurrent_requests,
            default_timeout_seconds=config.default_timeout_seconds,
            cache_degraded_results=config.cache_degraded_results,
        )

    # --- Shared computations ---

    def in_flight_keys(self) -> List[str]:
        with self._lock:
            return list(self._inflight)

    def _shared_future(
        self,
        key: str,
        category: Union[str, CacheCategory],
        compute_fn: ComputeFn,
        ttl: Optional[float],
    ) -> Future:
        category = CacheCategory.parse(category)
        if ttl is not None and ttl <= 0:
            raise ValueError(f"TTL must be greater than 0 (received {ttl}).")

        with self._lock:
            started = time.perf_counter()
            entry = self.store.get(key)
            if entry is not None:
                self.monitor.record_outcome(
                    category.value, RequestOutcome.CACHE_HIT, (time.perf_counter() - started) * 1000
                )
                hit: Future = Future()
                hit.set_result(RequestResult(key, ResultStatus.OK, value=entry.payload, from_cache=True))
                return hit

            future = self._inflight.get(key)
            if future is not None:
                logger.debug("Joining in-flight request for %s.", key)
                return future

            future = self._executor.submit(self._compute, key, category, compute_fn, ttl)
            self._inflight[key] = future
            return future

    def _compute(
        self,
        key: str,
        category: CacheCategory,
        compute_fn: ComputeFn,
        ttl: Optional[float],
    ) -> RequestResult:
        started = time.perf_counter()
        try:
            try:
                outcome = compute_fn()
                degraded = isinstance(outcome, Degraded)
                payload = outcome.value if degraded else outcome
                if not isinstance(payload, (bytes, bytearray)):
                    raise TypeError(
                        f"Compute function for {key!r} returned {type(payload).__name__}, expected bytes."
                    )
                payload = bytes(payload)
            except Exception as exc:
                latency_ms = (time.perf_counter() - started) * 1000
                self.monitor.record_outcome(category.value, RequestOutcome.FAILURE, latency_ms)
                logger.warning("Request %s failed after %.0fms: %s", key, latency_ms, exc)
                raise

            latency_ms = (time.perf_counter() - started) * 1000
            if degraded and not self.cache_degraded_results:
                logger.info("Request %s returned a degraded result; not caching it.", key)
            else:
                self._store_result(key, category, payload, ttl)
            self.monitor.record_outcome(category.value, RequestOutcome.SUCCESS, latency_ms)
            status = ResultStatus.DEGRADED if degraded else ResultStatus.OK
            return RequestResult(key, status, value=payload)
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def _store_result(self, key: str, category: CacheCategory, payload: bytes, ttl: Optional[float]) -> None:
        try:
            self.store.put(key, category, payload, ttl=ttl)
        except CacheEntryTooLarge as exc:
            logger.warning("Not caching %s: %s", key, exc)
        except CacheStoreIOError as exc:
            logger.warning("Failed to persist %s, serving it uncached: %s", key, exc)

    # --- Waiting ---

    def _effective_timeout(self, category: Union[str, CacheCategory], timeout: Optional[float]) -> Optional[float]:
        if timeout is not None:
            return timeout
        if self.default_timeout_seconds is None:
            return None
        return self.default_timeout_seconds * CacheCategory.parse(category).timeout_multiplier

    @staticmethod
    def _wait(
        key: str,
        future: Future,
        timeout: Optional[float],
        cancel_token: Optional[CancellationToken],
    ) -> RequestResult:
        if timeout is None and cancel_token is None:
            return future.result()

        woken = threading.Event()
        future.add_done_callback(lambda _: woken.set())
        if cancel_token is not None:
            cancel_token.add_callback(woken.set)
        try:
            woken.wait(timeout)
        finally:
            if cancel_token is not None:
                cancel_token.remove_callback(woken.set)

        if future.done():
            return future.result()
        if cancel_token is not None and cancel_token.cancelled:
            raise RequestCancelled(key)
        raise RequestTimeout(key, timeout)

    # --- Public API ---

    def submit(
        self,
        key: str,
        category: Union[str, CacheCategory],
        compute_fn: ComputeFn,
        ttl: Optional[float] = None,
    ) -> Future:
        """Start or join the computation for ``key`` and return a caller-owned future.

        The future resolves to a :class:`RequestResult` or raises the compute
        error. Cancelling it only detaches this caller.
        """
        return _chain(self._shared_future(key, category, compute_fn, ttl))

    def execute_result(
        self,
        key: str,
        category: Union[str, CacheCategory],
        compute_fn: ComputeFn,
        ttl: Optional[float] = None,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RequestResult:
        """Like :meth:`execute`, but report failures in the result instead of raising them."""
        if cancel_token is not None and cancel_token.cancelled:
            return RequestResult(key, ResultStatus.ERROR, error=RequestCancelled(key))
        future = self._shared_future(key, category, compute_fn, ttl)
        try:
            return self._wait(key, future, self._effective_timeout(category, timeout), cancel_token)
        except Exception as exc:
            return RequestResult(key, ResultStatus.ERROR, error=exc)

    def execute(
        self,
        key: str,
        category: Union[str, CacheCategory],
        compute_fn: ComputeFn,
        ttl: Optional[float] = None,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bytes:
        """Return the cached or freshly computed payload for ``key``.

        Raises the compute function's exception verbatim, :class:`RequestTimeout`
        when this caller's timeout elapses, or :class:`RequestCancelled` when its
        token is cancelled.
        """
        return self.execute_result(key, category, compute_fn, ttl, timeout, cancel_token).unwrap()

    async def execute_async(
        self,
        key: str,
        category: Union[str, CacheCategory],
        compute_fn: ComputeFn,
        ttl: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> bytes:
        """Awaitable :meth:`execute`. Cancelling the awaiting task only detaches it."""
        future = self._shared_future(key, category, compute_fn, ttl)
        waiter = asyncio.shield(asyncio.wrap_future(_chain(future)))
        effective_timeout = self._effective_timeout(category, timeout)
        try:
            result = await asyncio.wait_for(waiter, effective_timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeout(key, effective_timeout) from exc
        return result.unwrap()

    def execute_batch(
        self,
        items: Iterable[Union[BatchItem, Tuple[Any, ...]]],
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[RequestResult]:
        """Run every item and return results in input order.

        Items sharing a key within one batch share a single computation, even
        when its result is not cacheable.
        """
        batch = [item if isinstance(item, BatchItem) else BatchItem(*item) for item in items]
        shared: Dict[str, Future] = {}
        futures: List[Tuple[BatchItem, Future]] = []
        for item in batch:
            future = shared.get(item.key)
            if future is None:
                future = shared[item.key] = self._shared_future(item.key, item.category, item.compute_fn, item.ttl)
            elif _served_from_cache(future):
                # Each duplicate answered from the cache is a hit of its own.
                self.monitor.record_outcome(CacheCategory.parse(item.category).value, RequestOutcome.CACHE_HIT, 0.0)
            futures.append((item, future))

        results: List[RequestResult] = []
        for item, future in futures:
            if cancel_token is not None and cancel_token.cancelled:
                results.append(RequestResult(item.key, ResultStatus.ERROR, error=RequestCancelled(item.key)))
                continue
            try:
                results.append(
                    self._wait(item.key, future, self._effective_timeout(item.category, timeout), cancel_token)
                )
            except Exception as exc:
                results.append(RequestResult(item.key, ResultStatus.ERROR, error=exc))
        return results

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
