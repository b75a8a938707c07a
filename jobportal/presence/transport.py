"""
Realtime presence transport interface and an in-process implementation.

The transport protocol mirrors hosted realtime presence services:
open a named channel, register sync/join/leave handlers, subscribe,
track yourself, read the authoritative membership state, unsubscribe.

LocalPresenceHub keeps membership for all channels in this process. The
API server uses it to count online users, and clients in the same process
can subscribe to it directly.
"""
import asyncio
import inspect
import logging
import threading
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from .models import (
    PresenceError,
    PresenceEvent,
    PresencePayload,
    PresenceRecord,
    PresenceState,
    SubscriptionStatus,
)

logger = logging.getLogger("presence.transport")

EventHandler = Callable[[PresencePayload], None]
StatusCallback = Callable[[SubscriptionStatus], Any]


class PresenceChannel(Protocol):
    """One subscription to a named presence channel."""

    def on(self, event: PresenceEvent, handler: EventHandler) -> "PresenceChannel":
        ...

    def subscribe(self, callback: Optional[StatusCallback] = None) -> "PresenceChannel":
        ...

    async def track(self, record: PresenceRecord) -> None:
        """Announce this client so other subscribers count it."""
        ...

    def presence_state(self) -> PresenceState:
        ...

    def unsubscribe(self) -> None:
        """Stop receiving events and leave the channel."""
        ...


class PresenceTransport(Protocol):
    """
    Interface for realtime presence transports.

    Implementations:
    - LocalPresenceHub: in-process membership (current)
    """

    def channel(self, name: str) -> PresenceChannel:
        ...


class LocalPresenceChannel:
    """Channel handle bound to a LocalPresenceHub topic."""

    def __init__(self, hub: "LocalPresenceHub", name: str):
        self.hub = hub
        self.name = name
        self.key = uuid.uuid4().hex
        self._handlers: Dict[PresenceEvent, List[EventHandler]] = defaultdict(list)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscribed = False
        self._tracked = False
        self._tasks: Set[asyncio.Future] = set()

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    def on(self, event: PresenceEvent, handler: EventHandler) -> "LocalPresenceChannel":
        self._handlers[event].append(handler)
        return self

    def subscribe(self, callback: Optional[StatusCallback] = None) -> "LocalPresenceChannel":
        """
        Join the topic. Must be called from a running event loop; events
        and the status callback are delivered on that loop.
        """
        if self._subscribed:
            return self
        self._loop = asyncio.get_running_loop()
        self._subscribed = True
        self.hub._attach(self)
        if callback is not None:
            self._loop.call_soon(self._ack, callback, SubscriptionStatus.SUBSCRIBED)
        self.deliver(PresenceEvent.SYNC, PresencePayload(key=""))
        return self

    def _ack(self, callback: StatusCallback, status: SubscriptionStatus) -> None:
        if not self._subscribed:
            return
        result = callback(status)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Subscription callback failed on {self.name}: {task.exception()}")

    async def track(self, record: PresenceRecord) -> None:
        if not self._subscribed:
            raise PresenceError(f"Cannot track on unsubscribed channel {self.name}")
        self._tracked = True
        self.hub.join(self.name, self.key, record.to_dict())

    def presence_state(self) -> PresenceState:
        return self.hub.state(self.name)

    def unsubscribe(self) -> None:
        if not self._subscribed:
            return
        self._subscribed = False
        self.hub._detach(self)
        if self._tracked:
            self._tracked = False
            self.hub.leave(self.name, self.key)
        logger.debug(f"Unsubscribed {self.key} from {self.name}")

    def deliver(self, event: PresenceEvent, payload: PresencePayload) -> None:
        """Schedule handlers for `event` on this channel's loop (thread-safe)."""
        if not self._subscribed or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._dispatch, event, payload)
        except RuntimeError as e:
            # The subscriber's loop closed without unsubscribing
            logger.warning(f"Dropping subscriber {self.key} on {self.name}: {e}")
            self.unsubscribe()

    def _dispatch(self, event: PresenceEvent, payload: PresencePayload) -> None:
        # Re-checked here: unsubscribe() may have run after scheduling
        if not self._subscribed:
            return
        for handler in list(self._handlers[event]):
            try:
                handler(payload)
            except Exception as e:
                logger.warning(f"Presence {event.value} handler failed on {self.name}: {e}")


class LocalPresenceHub:
    """
    In-process presence membership for any number of named channels.

    join()/leave() may be called from any thread (API request handlers);
    subscribed channels receive sync plus join/leave events on their own
    event loop, in the order the hub emitted them.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._members: Dict[str, PresenceState] = defaultdict(dict)
        self._channels: Dict[str, List[LocalPresenceChannel]] = defaultdict(list)

    def channel(self, name: str) -> LocalPresenceChannel:
        return LocalPresenceChannel(self, name)

    def _attach(self, channel: LocalPresenceChannel) -> None:
        with self._lock:
            self._channels[channel.name].append(channel)

    def _detach(self, channel: LocalPresenceChannel) -> None:
        with self._lock:
            subscribers = self._channels.get(channel.name, [])
            if channel in subscribers:
                subscribers.remove(channel)

    def state(self, name: str) -> PresenceState:
        """Copy of the authoritative membership for a channel."""
        with self._lock:
            return {key: list(records) for key, records in self._members.get(name, {}).items()}

    def member_count(self, name: str) -> int:
        with self._lock:
            return len(self._members.get(name, {}))

    def join(self, name: str, key: str, record: Dict[str, Any]) -> None:
        """Track `record` under `key`; replaces any earlier record for that key."""
        with self._lock:
            self._members[name][key] = [record]
            subscribers = list(self._channels.get(name, []))
        logger.debug(f"Presence join {key} on {name}")
        self._broadcast(
            subscribers,
            PresenceEvent.JOIN,
            PresencePayload(key=key, new_presences=[record]),
        )

    def leave(self, name: str, key: str) -> bool:
        with self._lock:
            records = self._members.get(name, {}).pop(key, None)
            subscribers = list(self._channels.get(name, []))
        if records is None:
            return False
        logger.debug(f"Presence leave {key} on {name}")
        self._broadcast(
            subscribers,
            PresenceEvent.LEAVE,
            PresencePayload(key=key, left_presences=records),
        )
        return True

    def _broadcast(
        self,
        subscribers: List[LocalPresenceChannel],
        event: PresenceEvent,
        payload: PresencePayload,
    ) -> None:
        for channel in subscribers:
            channel.deliver(PresenceEvent.SYNC, PresencePayload(key=""))
            channel.deliver(event, payload)


# Process-wide hub shared by the API server and in-process subscribers
_presence_hub: Optional[LocalPresenceHub] = None


def get_presence_hub() -> LocalPresenceHub:
    """Get or create the global presence hub."""
    global _presence_hub
    if _presence_hub is None:
        _presence_hub = LocalPresenceHub()
    return _presence_hub
