"""
Change feed for committed geofence, membership and device binding writes.

The store hands every committed transaction's changes to ChangeFeed.publish.
Realtime delivery to clients is someone else's job; this module provides
the ordered, authorized stream they consume.

Invariants:
    - Sequence numbers are assigned in commit order, starting at 1
    - Each event reaches each authorized, open subscription exactly once
    - Rolled-back transactions publish nothing
    - Recipients are decided by the store with the select policy, inside
      the transaction (post-state for insert/update, pre-state for delete)

How to change safely:
    - Keep publish() free of awaits; ordering relies on it running under
      the store's publish lock right after COMMIT
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any

from .errors import NoIdentity
from .store.models import Entity, utc_now

logger = logging.getLogger(__name__)

FEED_ENTITIES = frozenset({Entity.GEOFENCE, Entity.MEMBERSHIP, Entity.DEVICE_BINDING})


@dataclass(frozen=True)
class ChangeEvent:
    """One committed row mutation.

    Attributes:
        sequence: Position in commit order
        entity: Entity of the row
        operation: insert, update or delete
        row: Row after the change (the removed row for deletes)
        old_row: Row before the change (updates and deletes)
        committed_at: Commit timestamp
    """

    sequence: int
    entity: Entity
    operation: str
    row: dict[str, Any]
    old_row: dict[str, Any] | None
    committed_at: str


@dataclass(frozen=True)
class PendingChange:
    """A change recorded inside an open transaction."""

    entity: Entity
    operation: str
    row: dict[str, Any]
    old_row: dict[str, Any] | None = None
    recipients: frozenset[str] = field(default_factory=frozenset)


_CLOSED = object()


class Subscription:
    """A principal's view of the change feed.

    Example:
        >>> sub = feed.subscribe("user_1")
        >>> async for event in sub:
        ...     print(event.sequence, event.entity, event.operation)
    """

    def __init__(
        self,
        principal: str,
        entities: frozenset[Entity],
        queue_size: int = 0,
    ) -> None:
        self.principal = principal
        self.entities = entities
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: ChangeEvent) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.warning(
                "Subscription queue full, closing",
                extra={"principal": self.principal, "sequence": event.sequence},
            )
            self._closed = True
            return False

    def close(self) -> None:
        """Stop receiving events; pending ones can still be read."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    async def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """Wait for the next event.

        Returns:
            The next event, or None on timeout or once closed and drained
        """
        if self._closed and self._queue.empty():
            return None
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def pending(self) -> int:
        """Number of queued events."""
        return self._queue.qsize()

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class ChangeFeed:
    """Ordered in-process fan-out of committed changes.

    Thread safety:
        publish() and subscribe() are guarded by a lock. Subscriptions use
        asyncio queues and should be read from the event loop that
        created them.
    """

    def __init__(self, history_size: int = 1000, queue_size: int = 0) -> None:
        """Initialize the feed.

        Args:
            history_size: Number of recent events retained by history()
            queue_size: Per-subscription queue bound (0 = unbounded)
        """
        self.queue_size = queue_size
        self._history: deque[tuple[ChangeEvent, frozenset[str]]] = deque(maxlen=history_size)
        self._subscriptions: list[Subscription] = []
        self._sequence = 0
        self._lock = threading.Lock()

    def subscribe(
        self,
        principal: str | None,
        entities: Iterable[Entity] | None = None,
    ) -> Subscription:
        """Open a subscription for a principal.

        Args:
            principal: Subscribing principal
            entities: Entities of interest (default: all feed entities)

        Raises:
            NoIdentity: If principal is missing
            ValueError: If an entity is not published on the feed
        """
        if not principal:
            raise NoIdentity("subscribe")

        wanted = frozenset(entities) if entities is not None else FEED_ENTITIES
        unknown = wanted - FEED_ENTITIES
        if unknown:
            raise ValueError(f"Not published on the change feed: {sorted(e.value for e in unknown)}")

        subscription = Subscription(principal, wanted, self.queue_size)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug("Subscribed", extra={"principal": principal})
        return subscription

    def subscriber_principals(self) -> set[str]:
        """Principals with at least one open subscription."""
        with self._lock:
            return {s.principal for s in self._subscriptions if not s.closed}

    def publish(self, changes: list[PendingChange]) -> list[ChangeEvent]:
        """Publish a committed transaction's changes.

        Args:
            changes: Changes in the order they were made

        Returns:
            The published events
        """
        if not changes:
            return []

        committed_at = utc_now()
        events = []
        with self._lock:
            self._subscriptions = [s for s in self._subscriptions if not s.closed]
            for change in changes:
                self._sequence += 1
                event = ChangeEvent(
                    sequence=self._sequence,
                    entity=change.entity,
                    operation=change.operation,
                    row=change.row,
                    old_row=change.old_row,
                    committed_at=committed_at,
                )
                self._history.append((event, change.recipients))
                events.append(event)

                for subscription in self._subscriptions:
                    if (
                        subscription.principal in change.recipients
                        and change.entity in subscription.entities
                    ):
                        subscription._deliver(event)

        logger.debug(
            "Published changes",
            extra={"count": len(events), "last_sequence": events[-1].sequence},
        )
        return events

    def history(self, since: int = 0, principal: str | None = None) -> list[ChangeEvent]:
        """Retained events with sequence greater than since.

        Args:
            since: Last sequence already seen
            principal: Only events delivered to this principal. Recipients
                are decided among open subscriptions at commit time, so a
                principal sees only what it was subscribed for.

        Returns:
            Matching events in sequence order. Without a principal every
            retained event is returned; that form is service-role only
            (admin tooling and tests), never for request handlers.
        """
        with self._lock:
            return [
                event
                for event, recipients in self._history
                if event.sequence > since and (principal is None or principal in recipients)
            ]

    @property
    def last_sequence(self) -> int:
        return self._sequence
