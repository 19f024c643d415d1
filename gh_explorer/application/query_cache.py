"""
In-memory query cache.

Memoizes the result of async producers under tuple keys, with per-registration
staleness and retention windows, retry policies, and de-duplication of
concurrent fetches for the same key. All state is mutated on the event loop only.

Entries that are observed or being fetched live in a plain dict. Once nobody
uses an entry it moves to a cachetools.TLRUCache that expires it after the
entry's retention time.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple

from cachetools import TLRUCache

from gh_explorer.domain.exceptions import (
    GitHubApiError,
    InvalidPayloadError,
    NOT_FOUND_STATUS,
    RATE_LIMITED_STATUS,
)

logger = logging.getLogger(__name__)

QueryKey = Tuple[Hashable, ...]
Producer = Callable[[], Awaitable[Any]]
RetryPolicy = Callable[[int, BaseException], bool]
Listener = Callable[["QueryResult"], None]

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_STALE_TIME = 0.0
DEFAULT_RETENTION_TIME = 5 * 60.0
MAX_IDLE_ENTRIES = 1000
MAX_RETRY_DELAY = 30.0


def retry_unless_status(*statuses: int, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> RetryPolicy:
    """
    Builds a retry policy that gives up after `max_attempts` attempts in total,
    or immediately when the failure is a GitHubApiError with one of `statuses`.
    Malformed payloads are never retried: the same response fails the same way.
    """
    def should_retry(failure_count: int, error: BaseException) -> bool:
        if isinstance(error, InvalidPayloadError):
            return False
        if isinstance(error, GitHubApiError) and error.status in statuses:
            return False
        return failure_count < max_attempts

    return should_retry


# Retrying a quota rejection cannot succeed.
default_retry = retry_unless_status(RATE_LIMITED_STATUS)
# Neither can retrying a lookup of an account that does not exist.
account_retry = retry_unless_status(RATE_LIMITED_STATUS, NOT_FOUND_STATUS)


def exponential_backoff(failure_count: int) -> float:
    return min(2 ** (failure_count - 1) + random.uniform(0, 1), MAX_RETRY_DELAY)


class QueryStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class QueryOptions:
    """Per-registration behaviour. Times are in seconds."""
    stale_time: float = DEFAULT_STALE_TIME
    retention_time: float = DEFAULT_RETENTION_TIME
    retry: RetryPolicy = default_retry
    enabled: bool = True


@dataclass(frozen=True)
class QueryResult:
    """Read-only snapshot handed to consumers."""
    data: Any = None
    is_loading: bool = False
    error: Optional[BaseException] = None
    status: QueryStatus = QueryStatus.IDLE


@dataclass
class CacheEntry:
    key: QueryKey
    data: Any = None
    error: Optional[BaseException] = None
    status: QueryStatus = QueryStatus.IDLE
    fetched_at: Optional[float] = None
    # How long the entry survives once unobserved
    retention_time: float = DEFAULT_RETENTION_TIME
    invalidated: bool = False
    in_flight: Optional["asyncio.Task[Any]"] = None
    observers: List["QueryObserver"] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None

    @property
    def is_fetching(self) -> bool:
        return self.in_flight is not None and not self.in_flight.done()

    def stale_at(self, stale_time: float) -> Optional[float]:
        if self.fetched_at is None:
            return None
        return self.fetched_at + stale_time

    def is_stale(self, now: float, stale_time: float) -> bool:
        if not self.has_data or self.invalidated:
            return True
        return now >= self.stale_at(stale_time)


def _retrieve_exception(task: "asyncio.Task[Any]") -> None:
    # Failures are recorded on the entry; background fetches may have no awaiter.
    if not task.cancelled():
        task.exception()


class QueryObserver:
    """
    A consumer's subscription to one cache entry.

    The observer never owns data: `result` is always derived from the entry,
    so every observer of a key sees the same value.
    """

    def __init__(self, cache: "QueryCache", entry: CacheEntry, producer: Producer, options: QueryOptions):
        self._cache = cache
        self._entry = entry
        self.producer = producer
        self.options = options
        self._listeners: List[Listener] = []
        self.active = True

    @property
    def result(self) -> QueryResult:
        entry = self._entry
        if not self.options.enabled:
            return QueryResult()
        return QueryResult(
            data=entry.data,
            is_loading=not entry.has_data and entry.status == QueryStatus.FETCHING,
            error=entry.error,
            status=entry.status,
        )

    @property
    def data(self) -> Any:
        return self.result.data

    @property
    def is_loading(self) -> bool:
        return self.result.is_loading

    @property
    def error(self) -> Optional[BaseException]:
        return self.result.error

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _emit(self) -> None:
        if not self.active or not self.options.enabled:
            return
        result = self.result
        for listener in list(self._listeners):
            listener(result)

    def refetch(self) -> "asyncio.Task[Any]":
        """Starts (or joins) a fetch regardless of staleness."""
        return self._cache._dispatch(self._entry, self.producer, self.options)

    async def wait(self) -> QueryResult:
        """Waits for the outstanding fetch, if any, and returns the settled result."""
        task = self._entry.in_flight
        if task is not None and not task.done():
            await asyncio.wait([task])
        return self.result

    def unsubscribe(self) -> None:
        """
        Detaches from the entry. An outstanding fetch keeps running and still
        populates the cache, but its result is not delivered here.
        """
        if not self.active:
            return
        self.active = False
        self._listeners.clear()
        self._cache._detach(self._entry, self)


class QueryCache:
    """
    Request-memoization engine keyed by tuples such as ("account", "octocat").

    Construct one per application and pass it to whoever needs it.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        retry_delay: Callable[[int], float] = exponential_backoff,
    ):
        self._clock = clock
        self._retry_delay = retry_delay
        self._active: Dict[QueryKey, CacheEntry] = {}
        self._idle: TLRUCache = TLRUCache(
            maxsize=MAX_IDLE_ENTRIES,
            ttu=lambda key, entry, now: now + entry.retention_time,
            timer=clock,
        )

    def __contains__(self, key: QueryKey) -> bool:
        return key in self._active or key in self._idle

    def __len__(self) -> int:
        self._idle.expire()
        return len(self._active) + len(self._idle)

    def _entry(self, key: QueryKey) -> CacheEntry:
        """Returns the entry for `key` as an active one, reviving it from the idle cache or creating it."""
        entry = self._active.get(key)
        if entry is None:
            entry = self._idle.pop(key, None)
            if entry is None:
                entry = CacheEntry(key=key)
            self._active[key] = entry
        return entry

    def peek(self, key: QueryKey) -> Optional[CacheEntry]:
        entry = self._active.get(key)
        if entry is None:
            entry = self._idle.get(key)
        return entry

    def get_query_data(self, key: QueryKey) -> Any:
        entry = self.peek(key)
        return entry.data if entry is not None else None

    def set_query_data(self, key: QueryKey, data: Any, retention_time: float = DEFAULT_RETENTION_TIME) -> None:
        """Seeds an entry as if it had just been fetched, without calling any producer."""
        entry = self._entry(key)
        logger.debug(f"Seeding cache entry {key}.")
        entry.retention_time = retention_time
        self._settle_success(entry, data)
        self._release(entry)

    async def fetch(self, key: QueryKey, producer: Producer, options: QueryOptions = QueryOptions()) -> Any:
        """
        Returns fresh cached data for `key`, or runs `producer` (joining any
        fetch already in flight) and returns its result.

        Raises the producer's last failure once the retry policy gives up.
        """
        entry = self._entry(key)
        if not entry.observers:
            entry.retention_time = options.retention_time
        if not entry.is_stale(self._clock(), options.stale_time):
            logger.debug(f"Cache hit for {key}.")
            self._release(entry)
            return entry.data

        task = self._dispatch(entry, producer, options)
        try:
            return await asyncio.shield(task)
        finally:
            self._release(entry)

    def subscribe(
        self,
        key: QueryKey,
        producer: Producer,
        options: QueryOptions = QueryOptions(),
        listener: Optional[Listener] = None,
    ) -> QueryObserver:
        """
        Registers a consumer for `key`. Stale or missing data triggers a
        background fetch when the registration is enabled; cached data, even
        stale, is visible right away through the observer.
        """
        entry = self._entry(key)
        observer = QueryObserver(self, entry, producer, options)
        if listener is not None:
            observer.add_listener(listener)
        entry.observers.append(observer)
        entry.retention_time = options.retention_time

        if options.enabled and entry.is_stale(self._clock(), options.stale_time):
            self._dispatch(entry, producer, options)
        return observer

    def invalidate(self, key: QueryKey) -> None:
        """Marks an entry stale and refetches it if an enabled observer is attached."""
        entry = self.peek(key)
        if entry is None:
            return
        entry.invalidated = True
        for observer in entry.observers:
            if observer.options.enabled:
                self._dispatch(entry, observer.producer, observer.options)
                break

    def clear(self) -> None:
        """Drops every entry. Fetches already in flight finish but are not cached."""
        logger.debug(f"Clearing {len(self._active)} active and {len(self._idle)} idle cache entries.")
        self._active.clear()
        self._idle.clear()

    def _dispatch(self, entry: CacheEntry, producer: Producer, options: QueryOptions) -> "asyncio.Task[Any]":
        # The task is stored before returning so that every later caller,
        # including ones in the same tick, joins it instead of starting another.
        if entry.is_fetching:
            logger.debug(f"Joining in-flight fetch for {entry.key}.")
            return entry.in_flight

        task = asyncio.get_running_loop().create_task(self._run(entry, producer, options))
        task.add_done_callback(_retrieve_exception)
        entry.in_flight = task
        entry.status = QueryStatus.FETCHING
        self._notify(entry)
        return task

    async def _run(self, entry: CacheEntry, producer: Producer, options: QueryOptions) -> Any:
        failure_count = 0
        try:
            while True:
                try:
                    data = await producer()
                except Exception as e:
                    failure_count += 1
                    if not options.retry(failure_count, e):
                        logger.warning(f"Query {entry.key} failed after {failure_count} attempt(s): {e}")
                        self._settle_error(entry, e)
                        raise
                    delay = self._retry_delay(failure_count)
                    logger.warning(
                        f"Query {entry.key} failed (attempt {failure_count}): {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)
                else:
                    self._settle_success(entry, data)
                    return data
        except asyncio.CancelledError:
            entry.status = QueryStatus.SUCCESS if entry.has_data else QueryStatus.IDLE
            raise
        finally:
            entry.in_flight = None
            self._release(entry)

    def _settle_success(self, entry: CacheEntry, data: Any) -> None:
        entry.data = data
        entry.error = None
        entry.fetched_at = self._clock()
        entry.invalidated = False
        entry.status = QueryStatus.SUCCESS
        self._notify(entry)

    def _settle_error(self, entry: CacheEntry, error: BaseException) -> None:
        entry.error = error
        entry.status = QueryStatus.ERROR
        self._notify(entry)

    def _notify(self, entry: CacheEntry) -> None:
        for observer in list(entry.observers):
            observer._emit()

    def _detach(self, entry: CacheEntry, observer: QueryObserver) -> None:
        if observer in entry.observers:
            entry.observers.remove(observer)
        entry.retention_time = observer.options.retention_time
        self._release(entry)

    def _release(self, entry: CacheEntry) -> None:
        # Only the current entry for its key moves; cleared entries are dropped.
        if entry.observers or entry.is_fetching or self._active.get(entry.key) is not entry:
            return
        del self._active[entry.key]
        self._idle[entry.key] = entry
