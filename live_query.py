"""
Live Query Subscription

A LiveQuery keeps a standing subscription on a QuerySpec and turns every
delivery from the store into an Outcome: the complete, decoded result set, or
a classified failure. Snapshots are never diffed against each other; each one
is authoritative as of delivery.

    async with LiveQuery(store, spec, Doubt).start() as live:
        async for outcome in live:
            if outcome.ok:
                render(outcome.records)
            else:
                show_error(outcome.error)
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

from database import QuerySpec
from exceptions import QueryError, StudySyncError
from logging_config import logger
from schemas import StoredRecord, decode_records

T = TypeVar("T")


@dataclass
class Outcome(Generic[T]):
    """Result of one delivery: success(records) or failure(error)."""
    records: List[T] = field(default_factory=list)
    error: Optional[StudySyncError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, records: List[T]) -> "Outcome[T]":
        return cls(records=list(records))

    @classmethod
    def failure(cls, error: StudySyncError) -> "Outcome[T]":
        return cls(error=error)

    def to_dict(self, render: Optional[Callable[[T], Dict[str, Any]]] = None) -> Dict[str, Any]:
        if not self.ok:
            return {"status": "error", "error": self.error.to_dict()}
        render = render or (lambda r: r.model_dump(mode="json") if isinstance(r, StoredRecord) else r)
        return {"status": "ok", "items": [render(r) for r in self.records]}


class LiveQuery(Generic[T]):
    """
    Standing subscription delivering full snapshots of a query.

    Must be started from a running event loop. Store callbacks may come from
    any thread; they are handed to the loop with call_soon_threadsafe.
    After the first failure the subscription is released and the error stays.
    """

    def __init__(self, store, spec: QuerySpec, model: Optional[Type[T]] = None):
        self.store = store
        self.spec = spec
        self.model = model
        self.latest: Optional[Outcome[T]] = None
        # holds at most the newest undelivered outcome
        self._queue: "asyncio.Queue[Optional[Outcome[T]]]" = asyncio.Queue(maxsize=1)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._started = False
        self._closed = False

    # ----------------------- state -----------------------

    @property
    def loading(self) -> bool:
        return self.latest is None and not self._closed

    @property
    def data(self) -> List[T]:
        if self.latest is None or not self.latest.ok:
            return []
        return self.latest.records

    @property
    def error(self) -> Optional[StudySyncError]:
        return self.latest.error if self.latest is not None else None

    @property
    def active(self) -> bool:
        return self._started and not self._closed

    # ----------------------- lifecycle -----------------------

    def start(self) -> "LiveQuery[T]":
        if self._started:
            return self
        self._started = True
        self._loop = asyncio.get_running_loop()
        try:
            self._unsubscribe = self.store.subscribe_query(self.spec, self._on_snapshot)
        except StudySyncError as e:
            self._publish(None, e)
        else:
            logger.debug(f"Live query opened on {self.spec.collection}")
        return self

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()
        if self._started and self._queue.empty():
            # wake any consumer blocked in next_outcome()
            self._queue.put_nowait(None)
        logger.debug(f"Live query closed on {self.spec.collection}")

    def _release(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()

    async def __aenter__(self) -> "LiveQuery[T]":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()

    # ----------------------- delivery -----------------------

    def _on_snapshot(self, docs, error) -> None:
        loop = self._loop
        if self._closed or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._publish, docs, error)

    def _publish(self, docs, error) -> None:
        if self._closed:
            return
        if error is None:
            try:
                records = decode_records(self.model, docs, self.spec.collection) if self.model else list(docs)
            except StudySyncError as e:
                error = e
        if error is not None:
            logger.warning(f"Live query on {self.spec.collection} failed: {error.message}")
            outcome: Outcome[T] = Outcome.failure(error)
            # sticky: no more deliveries until a new subscription is made
            self._closed = True
            self._release()
        else:
            outcome = Outcome.success(records)
        self.latest = outcome
        if self._queue.full():
            # snapshots are whole result sets; an unread one is superseded
            self._queue.get_nowait()
        self._queue.put_nowait(outcome)

    async def next_outcome(self, timeout: Optional[float] = None) -> Outcome[T]:
        """Wait for the next delivery."""
        if not self._started:
            raise RuntimeError("LiveQuery.start() has not been called")
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        if timeout is None:
            outcome = await self._queue.get()
        else:
            outcome = await asyncio.wait_for(self._queue.get(), timeout)
        if outcome is None:
            raise StopAsyncIteration
        return outcome

    def __aiter__(self):
        return self

    async def __anext__(self) -> Outcome[T]:
        return await self.next_outcome()


def unexpected_failure(exc: BaseException, collection: str) -> StudySyncError:
    """Wrap anything that is not already classified."""
    if isinstance(exc, StudySyncError):
        return exc
    return QueryError(f"An unexpected database error occurred: {exc}", collection=collection)
