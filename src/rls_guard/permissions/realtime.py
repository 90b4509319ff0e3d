"""
Real-time change delivery that obeys the read policies.

ChangeFeed hands out a global commit sequence and releases committed events to
its listeners strictly in that order, holding back events whose predecessors
have not been published or cancelled yet.

ChangeFilter fans released events out to subscriptions. Handing an event to a
subscription only schedules a queue put on the subscriber's event loop, so the
committing thread never waits on subscribers. Each subscriber's owned and
enrolled classrooms are captured at release, in commit order, and travel with
the event; the read predicate and column masks are applied against that view
when the subscriber pulls the event, through the same Evaluator that serves
direct reads.
"""

import asyncio
import itertools
import logging
import threading
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from rls_guard.permissions.entities import Entity
from rls_guard.permissions.evaluator import Evaluator
from rls_guard.permissions.policies import Snapshot
from rls_guard.permissions.events import ChangeEvent, ChangeType
from rls_guard.permissions.principal import Principal
from rls_guard.settings import settings

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEvent], None]


class ChangeFeed:

    def __init__(self):
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._next_seq = 1
        self._pending: Dict[int, Optional[ChangeEvent]] = {}
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener):
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def reserve(self) -> int:
        """Claim the next commit sequence; must be followed by publish() or cancel()."""
        with self._lock:
            return next(self._counter)

    def publish(self, event: ChangeEvent) -> ChangeEvent:
        if event.commit_seq is None:
            event = event.model_copy(update={"commit_seq": self.reserve()})
        self._release(event.commit_seq, event)
        return event

    def cancel(self, seq: int):
        """Give up a reserved sequence whose transaction rolled back."""
        self._release(seq, None)

    def _release(self, seq: int, event: Optional[ChangeEvent]):
        with self._lock:
            if seq < self._next_seq or seq in self._pending:
                logger.warning(f"Commit sequence {seq} released twice, ignoring")
                return
            self._pending[seq] = event

            # Listeners run under the lock so concurrent releasers cannot interleave deliveries
            while self._next_seq in self._pending:
                ready = self._pending.pop(self._next_seq)
                self._next_seq += 1
                if ready is None:
                    continue
                for listener in self._listeners:
                    listener(ready)


class SubscriptionFilter(BaseModel):
    """Which events a subscriber asked for: an event type and column equality filters."""

    model_config = ConfigDict(frozen=True)

    event: str = "*"
    equals: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def parse(cls, spec: Union[None, str, Mapping[str, Any], "SubscriptionFilter"]) -> "SubscriptionFilter":
        """Accepts None, ``"classroom_id=eq.7"``, ``{"classroom_id": 7}`` or
        ``{"event": "update", "filter": "classroom_id=eq.7"}``."""
        if spec is None:
            return cls()
        if isinstance(spec, SubscriptionFilter):
            return spec
        if isinstance(spec, str):
            return cls(equals=cls._parse_expression(spec))

        spec = dict(spec)
        event = str(spec.pop("event", "*"))
        if event not in ("*",) + tuple(change.value for change in ChangeType):
            raise ValueError(f"Unknown event type {event!r}")

        equals = {}
        expression = spec.pop("filter", None)
        if expression:
            equals.update(cls._parse_expression(expression))
        equals.update({key: str(value) for key, value in spec.items()})
        return cls(event=event, equals=equals)

    @staticmethod
    def _parse_expression(expression: str) -> Dict[str, str]:
        equals = {}
        for part in expression.split(","):
            column, sep, rest = part.strip().partition("=")
            operator, dot, value = rest.partition(".")
            if not sep or not dot or operator != "eq" or not column:
                raise ValueError(f"Unsupported filter expression {part!r}")
            equals[column] = value
        return equals

    def matches_type(self, event: ChangeEvent) -> bool:
        return self.event == "*" or self.event == event.type.value

    def matches_payload(self, payload: Mapping[str, Any]) -> bool:
        for column, value in self.equals.items():
            # Columns masked out of the payload never match
            if column not in payload or payload[column] is None or str(payload[column]) != value:
                return False
        return True


class SubscriptionOverflow(Exception):
    """The subscriber fell too far behind and its subscription was closed."""


_CLOSED = object()


class Subscription:
    """A live stream of filtered change events for one actor and entity.

    Iterate it with ``async for``. Events still queued when the subscription is
    closed are dropped.
    """

    def __init__(self, change_filter: "ChangeFilter", principal: Principal, entity: Entity,
                 spec: SubscriptionFilter, loop: asyncio.AbstractEventLoop, maxsize: int = 0):
        self.id = str(uuid.uuid4())
        self.principal = principal
        self.entity = entity
        self.spec = spec
        self._filter = change_filter
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._overflowed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: ChangeEvent, snapshot: Optional[Snapshot] = None):
        """Called from whichever thread released the event; never blocks.

        ``snapshot`` is the subscriber's (owned, enrolled) view at release time;
        the event is judged against it however late it is consumed.
        """
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue, (event, snapshot))
        except RuntimeError:
            logger.warning(f"Subscription {self.id} lost its event loop, closing it")
            self._filter.unsubscribe(self)

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self._loop.call_soon_threadsafe(self._put_sentinel)
        except RuntimeError:
            pass

    def _enqueue(self, item: Tuple[ChangeEvent, Optional[Snapshot]]):
        if self._closed:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning(f"Subscription {self.id} overflowed, closing it")
            self._overflowed = True
            self._filter.unsubscribe(self)

    def _put_sentinel(self):
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        while True:
            if self._closed and self._queue.empty():
                self._raise_closed()
            item = await self._queue.get()
            if item is _CLOSED or self._closed:
                self._raise_closed()
            event, snapshot = item
            delivered = self._filter.filter_event(self.principal, event, self.spec, snapshot)
            if delivered is not None:
                return delivered

    def _raise_closed(self):
        if self._overflowed:
            raise SubscriptionOverflow(f"Subscription {self.id} overflowed")
        raise StopAsyncIteration


class ChangeFilter:

    def __init__(self, evaluator: Evaluator, feed: Optional[ChangeFeed] = None):
        self.evaluator = evaluator
        self._lock = threading.Lock()
        self._subscriptions: Dict[Entity, Set[Subscription]] = defaultdict(set)
        if feed is not None:
            feed.add_listener(self.dispatch)

    def subscribe(self, principal: Principal, entity: Entity, filter_spec: Any = None, *,
                  loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
        """Open a subscription; must be called from (or given) the subscriber's event loop."""
        entity = Entity(entity)
        subscription = Subscription(
            self, principal, entity, SubscriptionFilter.parse(filter_spec),
            loop or asyncio.get_running_loop(),
            maxsize=settings.SUBSCRIPTION_QUEUE_SIZE,
        )
        with self._lock:
            self._subscriptions[entity].add(subscription)
        logger.info(f"Subscription {subscription.id} opened on {entity.value} for {principal.user_id or 'anonymous'}")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            self._subscriptions[subscription.entity].discard(subscription)
        subscription.close()
        logger.info(f"Subscription {subscription.id} closed")

    def subscription_count(self, entity: Optional[Entity] = None) -> int:
        with self._lock:
            if entity is not None:
                return len(self._subscriptions.get(Entity(entity), ()))
            return sum(len(subs) for subs in self._subscriptions.values())

    def dispatch(self, event: ChangeEvent):
        with self._lock:
            targets = list(self._subscriptions.get(event.entity, ()))
        for subscription in targets:
            # Runs under the feed's release lock, so the view matches this commit
            snapshot = self.evaluator.index.snapshot_for(subscription.principal.user_id, event)
            subscription.offer(event, snapshot)

    def filter_event(self, principal: Principal, event: ChangeEvent,
                     spec: Optional[SubscriptionFilter] = None,
                     snapshot: Optional[Snapshot] = None) -> Optional[ChangeEvent]:
        """The event as this principal may see it, or None if it must not be delivered.

        Without a ``snapshot`` the principal's current AccessIndex view is used.
        """
        spec = spec or SubscriptionFilter()
        if not spec.matches_type(event):
            return None
        if snapshot is None:
            snapshot = self.evaluator.index.snapshot_for(principal.user_id, event)

        payload = self.evaluator.mask_row(principal, event.entity, event.image, snapshot=snapshot)
        if payload is None or not spec.matches_payload(payload):
            return None

        if event.type == ChangeType.delete:
            return event.model_copy(update={"old": payload, "new": None})

        old = None
        if event.type == ChangeType.update:
            # Prior values go out only if the subscriber could read the row before too
            old = self.evaluator.mask_row(principal, event.entity, event.old, snapshot=snapshot)
        return event.model_copy(update={"new": payload, "old": old})
