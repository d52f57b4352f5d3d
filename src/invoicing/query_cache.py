"""
In-memory query cache shared by every view of invoice data.

Entries are addressed by tuple query keys. Invalidation matches by key
prefix: invalidating ("invoices",) marks every invoice list stale. A stale
entry is refetched on the next fetch(); subscribers are told about every
invalidation and write so they can re-read.
"""
import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

log = logging.getLogger(__name__)

QueryKey = tuple
Listener = Callable[[QueryKey, str], None]


class QueryKeys:
    """Query key factory for consistent cache addressing."""

    @staticmethod
    def invoices() -> QueryKey:
        return ("invoices",)

    @staticmethod
    def invoice(invoice_id: str) -> QueryKey:
        return ("invoice", invoice_id)

    @staticmethod
    def line_items(invoice_id: str) -> QueryKey:
        return ("line-items", invoice_id)

    @staticmethod
    def events() -> QueryKey:
        return ("events",)

    @staticmethod
    def quotes() -> QueryKey:
        return ("quotes",)

    @staticmethod
    def payment_milestones(invoice_id: str) -> QueryKey:
        return ("payment-milestones", invoice_id)

    @staticmethod
    def invoice_with_milestones(invoice_id: str) -> QueryKey:
        return ("invoice-with-milestones", invoice_id)


query_keys = QueryKeys()


def key_matches(key: QueryKey, prefix: QueryKey) -> bool:
    return tuple(key[: len(prefix)]) == tuple(prefix)


@dataclass
class CacheEntry:
    """A cached query result."""
    data: Any
    is_stale: bool = False
    updated_at: float = field(default_factory=time.monotonic)


class QueryCache:
    """Keyed cache with prefix invalidation, subscriptions and cancellable reads."""

    def __init__(self):
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._listeners: dict[QueryKey, list[Listener]] = defaultdict(list)
        self._in_flight: dict[QueryKey, asyncio.Task] = {}

    # ── Reads / writes ──

    def get_data(self, key: QueryKey) -> Any | None:
        entry = self._entries.get(tuple(key))
        return entry.data if entry else None

    def has(self, key: QueryKey) -> bool:
        return tuple(key) in self._entries

    def is_stale(self, key: QueryKey) -> bool:
        """True if the key has no entry or was invalidated since its last write."""
        entry = self._entries.get(tuple(key))
        return entry is None or entry.is_stale

    def set_data(self, key: QueryKey, data: Any) -> None:
        key = tuple(key)
        self._entries[key] = CacheEntry(data=data)
        self._notify(key, "updated")

    def get_entry(self, key: QueryKey) -> CacheEntry | None:
        return self._entries.get(tuple(key))

    def restore_entry(self, key: QueryKey, entry: CacheEntry) -> None:
        """Put back a previously taken entry as is, staleness and timestamp included."""
        key = tuple(key)
        self._entries[key] = entry
        self._notify(key, "updated")

    def remove(self, key: QueryKey) -> None:
        self._entries.pop(tuple(key), None)

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    async def fetch(self, key: QueryKey, loader: Callable[[], Awaitable[Any]]) -> Any:
        """
        Return fresh data for key, loading it if missing or stale.

        Concurrent fetches of the same key share one load. If the load is
        cancelled (see cancel()), the current cached value is returned and
        nothing is written.
        """
        key = tuple(key)
        entry = self._entries.get(key)
        if entry is not None and not entry.is_stale:
            return entry.data

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key, loader))
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))

        await asyncio.wait({task})
        if task.cancelled():
            return self.get_data(key)
        return task.result()

    async def _load(self, key: QueryKey, loader: Callable[[], Awaitable[Any]]) -> Any:
        data = await loader()
        self.set_data(key, data)
        return data

    def _forget(self, key: QueryKey, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def cancel(self, key: QueryKey) -> int:
        """Cancel in-flight loads for every key under the prefix. Returns how many."""
        tasks = [t for k, t in self._in_flight.items() if key_matches(k, key) and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
            log.debug("Cancelled %d in-flight read(s) for %s", len(tasks), key)
        return len(tasks)

    def is_fetching(self, key: QueryKey) -> bool:
        return any(key_matches(k, key) and not t.done() for k, t in self._in_flight.items())

    # ── Invalidation / subscriptions ──

    def invalidate(self, key: QueryKey) -> list[QueryKey]:
        """Mark every entry under the prefix stale and notify listeners."""
        key = tuple(key)
        stale = [k for k in self._entries if key_matches(k, key)]
        for k in stale:
            self._entries[k].is_stale = True
        self._notify(key, "invalidated")
        return stale

    def subscribe(self, key: QueryKey, listener: Listener) -> Callable[[], None]:
        """
        Register listener(key, event) for writes and invalidations touching key.

        Returns a function that removes the subscription.
        """
        key = tuple(key)
        self._listeners[key].append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[key]

        return unsubscribe

    def _notify(self, key: QueryKey, event: str) -> None:
        for watched, listeners in list(self._listeners.items()):
            # A write to ("line-items", id) reaches ("line-items",) watchers and vice versa
            if key_matches(watched, key) or key_matches(key, watched):
                for listener in list(listeners):
                    try:
                        listener(tuple(key), event)
                    except Exception:
                        log.exception("Cache listener failed for %s", key)
