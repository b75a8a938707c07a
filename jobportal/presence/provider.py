"""
Online-users presence subscription.

The strategy pattern lets the UI get one "count changed" feed whether a
realtime presence channel is configured or the count endpoint has to be
polled.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import requests

from config.settings import Settings, settings as default_settings

from .models import (
    CancelHandle,
    CountCallback,
    PresenceEvent,
    PresencePayload,
    PresenceRecord,
    SubscriptionStatus,
    count_members,
)
from .transport import PresenceChannel, PresenceTransport, get_presence_hub

logger = logging.getLogger("presence.provider")


class PresenceStrategy(Protocol):
    """
    One way of producing online-user counts.

    Implementations:
    - ChannelPresenceStrategy: realtime presence channel (transport configured)
    - PollingPresenceStrategy: periodic GET of the count endpoint (fallback)
    """

    mode: str

    def start(self) -> None:
        ...

    def cancel(self) -> None:
        """Release the channel or timer. Must be safe to call twice."""
        ...


class ChannelPresenceStrategy:
    """Counts members of a realtime presence channel."""

    mode = "channel"

    def __init__(
        self,
        transport: PresenceTransport,
        channel_name: str,
        emit: CountCallback,
        placeholder_count: int,
    ):
        self.transport = transport
        self.channel_name = channel_name
        self.placeholder_count = placeholder_count
        self._emit = emit
        self._channel: Optional[PresenceChannel] = None

    def start(self) -> None:
        channel = self.transport.channel(self.channel_name)
        channel.on(PresenceEvent.SYNC, self._on_sync)
        channel.on(PresenceEvent.JOIN, self._on_membership_change)
        channel.on(PresenceEvent.LEAVE, self._on_membership_change)
        self._channel = channel
        channel.subscribe(self._on_status)
        logger.info(f"Subscribed to presence channel {self.channel_name}")

    def _current_count(self) -> int:
        if self._channel is None:
            return 0
        return count_members(self._channel.presence_state())

    def _on_sync(self, payload: PresencePayload) -> None:
        # Empty state before the first real sync would read "0 online"
        self._emit(self._current_count() or self.placeholder_count)

    def _on_membership_change(self, payload: PresencePayload) -> None:
        self._emit(self._current_count())

    async def _on_status(self, status: SubscriptionStatus) -> None:
        if status != SubscriptionStatus.SUBSCRIBED:
            logger.warning(f"Presence channel {self.channel_name} status: {status.value}")
            return
        if self._channel is not None:
            await self._channel.track(PresenceRecord())

    def cancel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.unsubscribe()
            logger.info(f"Unsubscribed from presence channel {self.channel_name}")


class PollingPresenceStrategy:
    """Polls the online-users count endpoint on a fixed interval."""

    mode = "polling"

    def __init__(
        self,
        url: str,
        interval: float,
        emit: CountCallback,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            url: Count endpoint returning {"success": bool, "count": int}
            interval: Seconds between polls; the first poll happens one
                interval after start()
            emit: Called with each successfully polled count
            timeout: Per-request timeout in seconds
            session: requests session (a new one if omitted)
        """
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self._emit = emit
        self._session = session or requests.Session()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        logger.info(f"Polling {self.url} every {self.interval}s for online users")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval
        while True:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            next_tick += self.interval
            count = await self.poll_once()
            if count is not None:
                self._emit(count)

    async def poll_once(self) -> Optional[int]:
        """One tick. Returns the count, or None if this tick failed."""
        try:
            data = await asyncio.to_thread(self._fetch)
        except Exception as e:
            logger.error(f"Error fetching online users: {e}")
            return None

        count = data.get("count") if isinstance(data, dict) else None
        if not (isinstance(data, dict) and data.get("success")):
            logger.warning(f"Online users endpoint reported failure: {data!r}")
            return None
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            logger.warning(f"Online users endpoint returned invalid count: {count!r}")
            return None
        return count

    def _fetch(self) -> Dict[str, Any]:
        resp = self._session.get(self.url, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.info(f"Stopped polling {self.url}")


class PresenceSubscription:
    """
    Live online-users count with a single teardown handle.

    The strategy is chosen once, here: a configured transport means a
    presence channel, no transport means polling.

    Usage:
        subscription = PresenceSubscription(on_count_changed, transport=hub)
        cancel = subscription.start()
        ...
        cancel()
    """

    def __init__(
        self,
        on_count_changed: CountCallback,
        transport: Optional[PresenceTransport] = None,
        config: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
    ):
        config = config or default_settings
        self._on_count_changed = on_count_changed
        self.active = False
        self.last_count: Optional[int] = None

        if transport is not None:
            self.strategy: PresenceStrategy = ChannelPresenceStrategy(
                transport,
                config.presence_channel,
                self._emit,
                config.presence_placeholder_count,
            )
        else:
            self.strategy = PollingPresenceStrategy(
                config.online_users_url,
                config.presence_poll_interval_seconds,
                self._emit,
                timeout=config.request_timeout_seconds,
                session=session,
            )

    @property
    def mode(self) -> str:
        return self.strategy.mode

    def start(self) -> CancelHandle:
        """Begin emitting counts. Must be called from a running event loop."""
        if self.active:
            return self.cancel
        self.active = True
        try:
            self.strategy.start()
        except Exception:
            self.active = False
            raise
        return self.cancel

    def cancel(self) -> None:
        """Stop all updates. No callback runs after this returns."""
        if not self.active:
            return
        self.active = False
        self.strategy.cancel()

    def _emit(self, count: int) -> None:
        if not self.active:
            return
        self.last_count = count
        try:
            self._on_count_changed(count)
        except Exception as e:
            logger.warning(f"Online users callback failed: {e}")


def create_presence_subscription(
    on_count_changed: CountCallback,
    transport: Optional[PresenceTransport] = None,
    config: Optional[Settings] = None,
) -> CancelHandle:
    """
    Subscribe to the online-users count.

    Uses `transport` when given; otherwise the process presence hub when
    realtime is enabled in settings; otherwise polls the count endpoint.

    Returns:
        Idempotent cancel function
    """
    config = config or default_settings
    if transport is None and config.realtime_enabled:
        transport = get_presence_hub()
    return PresenceSubscription(on_count_changed, transport=transport, config=config).start()
