"""
Unit tests for the online-users presence subscription.

Tests strategy selection, the realtime channel path against the
in-process hub, and the polling fallback with a mocked requests session.
"""
import asyncio
import threading
from unittest.mock import Mock

import pytest
import requests

from config.settings import Settings
from jobportal.presence import (
    ChannelPresenceStrategy,
    LocalPresenceHub,
    PollingPresenceStrategy,
    PresenceError,
    PresenceRecord,
    PresenceSubscription,
    create_presence_subscription,
    get_presence_hub,
)

POLL_INTERVAL = 0.05


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def config():
    return Settings(
        api_url="http://api.test/api",
        presence_channel="online-users-test",
        presence_poll_interval_seconds=POLL_INTERVAL,
        presence_placeholder_count=1247,
        realtime_enabled=False,
    )


@pytest.fixture
def hub():
    return LocalPresenceHub()


async def settle(rounds=10):
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate, timeout=2.0):
    """Poll `predicate` until true or fail after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not met in time"
        await asyncio.sleep(POLL_INTERVAL / 10)


def _json_response(payload):
    resp = Mock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


def scripted_session(*results):
    """
    Session whose get() walks through `results` (responses or exceptions),
    then keeps repeating the last one.
    """
    session = Mock()
    remaining = list(results)

    def get(url, timeout=None):
        result = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(result, Exception):
            raise result
        return _json_response(result)

    session.get.side_effect = get
    return session


# =============================================================================
# Strategy selection
# =============================================================================

class TestStrategySelection:
    """The strategy is chosen once at construction."""

    def test_transport_selects_channel(self, hub, config):
        subscription = PresenceSubscription(lambda n: None, transport=hub, config=config)
        assert subscription.mode == "channel"
        assert isinstance(subscription.strategy, ChannelPresenceStrategy)

    def test_no_transport_selects_polling(self, config):
        subscription = PresenceSubscription(lambda n: None, config=config)
        assert subscription.mode == "polling"
        assert isinstance(subscription.strategy, PollingPresenceStrategy)
        assert subscription.strategy.url == "http://api.test/api/users/online"
        assert subscription.strategy.interval == POLL_INTERVAL

    def test_default_poll_interval_is_three_seconds(self):
        subscription = PresenceSubscription(lambda n: None, config=Settings())
        assert subscription.strategy.interval == 3.0

    def test_start_requires_event_loop(self, config):
        subscription = PresenceSubscription(lambda n: None, config=config)
        with pytest.raises(RuntimeError):
            subscription.start()
        assert subscription.active is False

    @pytest.mark.asyncio
    async def test_realtime_enabled_uses_process_hub(self, config):
        config.realtime_enabled = True
        counts = []

        cancel = create_presence_subscription(counts.append, config=config)
        await settle()

        assert get_presence_hub().member_count(config.presence_channel) == 1
        assert counts[-1] == 1
        cancel()
        assert get_presence_hub().member_count(config.presence_channel) == 0


# =============================================================================
# Channel strategy
# =============================================================================

class TestChannelPresence:
    """Realtime presence channel against LocalPresenceHub."""

    @pytest.mark.asyncio
    async def test_placeholder_before_first_member_then_own_presence(self, hub, config):
        counts = []
        cancel = create_presence_subscription(counts.append, transport=hub, config=config)
        await settle()

        assert counts[0] == 1247
        assert counts[-1] == 1
        assert 0 not in counts
        cancel()

    @pytest.mark.asyncio
    async def test_tracks_join_timestamp(self, hub, config):
        cancel = create_presence_subscription(lambda n: None, transport=hub, config=config)
        await settle()

        [records] = hub.state(config.presence_channel).values()
        assert "online_at" in records[0]
        cancel()

    @pytest.mark.asyncio
    async def test_count_follows_joins_and_leaves(self, hub, config):
        first_counts = []
        cancel_first = create_presence_subscription(first_counts.append, transport=hub, config=config)
        await settle()
        cancel_second = create_presence_subscription(lambda n: None, transport=hub, config=config)
        await settle()

        assert first_counts[-1] == 2

        hub.join(config.presence_channel, "server-side-client", PresenceRecord().to_dict())
        await settle()
        assert first_counts[-1] == 3

        cancel_second()
        await settle()
        assert first_counts[-1] == 2
        cancel_first()

    @pytest.mark.asyncio
    async def test_count_recomputed_from_state(self, hub, config):
        """Duplicate joins for one key never inflate the count."""
        counts = []
        cancel = create_presence_subscription(counts.append, transport=hub, config=config)
        await settle()

        for _ in range(3):
            hub.join(config.presence_channel, "same-client", PresenceRecord().to_dict())
        await settle()

        assert counts[-1] == 2
        cancel()

    @pytest.mark.asyncio
    async def test_join_from_other_thread(self, hub, config):
        counts = []
        cancel = create_presence_subscription(counts.append, transport=hub, config=config)
        await settle()

        thread = threading.Thread(
            target=hub.join,
            args=(config.presence_channel, "api-client", {"online_at": "now"}),
        )
        thread.start()
        thread.join()
        await settle()

        assert counts[-1] == 2
        cancel()

    @pytest.mark.asyncio
    async def test_subscriber_on_closed_loop_is_dropped(self, hub, config):
        """A channel left subscribed on a finished loop must not break the hub."""
        counts = []
        cancel = create_presence_subscription(counts.append, transport=hub, config=config)
        await settle()
        leaked = []

        def subscribe_and_exit():
            async def subscribe():
                channel = hub.channel(config.presence_channel).subscribe()
                await channel.track(PresenceRecord())
                leaked.append(channel)

            asyncio.run(subscribe())

        thread = threading.Thread(target=subscribe_and_exit)
        thread.start()
        thread.join()
        await settle()
        assert hub.member_count(config.presence_channel) == 2

        hub.join(config.presence_channel, "alice", {"online_at": "now"})
        await settle()

        assert leaked[0].subscribed is False
        assert "alice" in hub.state(config.presence_channel)
        assert hub.member_count(config.presence_channel) == 2
        assert counts[-1] == 2
        assert hub.leave(config.presence_channel, "alice") is True
        cancel()

    @pytest.mark.asyncio
    async def test_cancel_stops_callbacks(self, hub, config):
        counts = []
        cancel = create_presence_subscription(counts.append, transport=hub, config=config)
        await settle()
        cancel()
        seen = list(counts)

        hub.join(config.presence_channel, "late-client", {"online_at": "now"})
        await settle()

        assert counts == seen
        assert hub.state(config.presence_channel) == {"late-client": [{"online_at": "now"}]}

    @pytest.mark.asyncio
    async def test_cancel_before_delivery_drops_pending_events(self, hub, config):
        counts = []
        cancel = create_presence_subscription(counts.append, transport=hub, config=config)
        cancel()
        await settle()

        assert counts == []
        assert hub.member_count(config.presence_channel) == 0

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, hub, config):
        cancel = create_presence_subscription(lambda n: None, transport=hub, config=config)
        await settle()

        cancel()
        cancel()

        assert hub.member_count(config.presence_channel) == 0

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_break_channel(self, hub, config):
        calls = []

        def flaky(count):
            calls.append(count)
            raise ValueError("render failed")

        subscription = PresenceSubscription(flaky, transport=hub, config=config)
        cancel = subscription.start()
        await settle()

        assert len(calls) >= 2
        assert subscription.last_count == 1
        cancel()

    @pytest.mark.asyncio
    async def test_track_requires_subscription(self, hub):
        channel = hub.channel("unsubscribed")
        with pytest.raises(PresenceError):
            await channel.track(PresenceRecord())


# =============================================================================
# Polling strategy
# =============================================================================

class TestPollingPresence:
    """Polling fallback with a mocked count endpoint."""

    @pytest.mark.asyncio
    async def test_poll_reports_count_every_interval(self, config):
        session = scripted_session({"success": True, "count": 42})
        counts = []
        subscription = PresenceSubscription(counts.append, config=config, session=session)

        cancel = subscription.start()
        await wait_for(lambda: len(counts) >= 3)
        cancel()

        assert counts[:3] == [42, 42, 42]
        session.get.assert_called_with("http://api.test/api/users/online", timeout=config.request_timeout_seconds)

    @pytest.mark.asyncio
    async def test_first_poll_waits_one_interval(self, config):
        session = scripted_session({"success": True, "count": 42})
        counts = []
        cancel = PresenceSubscription(counts.append, config=config, session=session).start()

        await asyncio.sleep(POLL_INTERVAL / 5)
        assert counts == []

        await wait_for(lambda: counts)
        assert counts[0] == 42
        cancel()

    @pytest.mark.asyncio
    async def test_failed_tick_keeps_last_value(self, config):
        session = scripted_session(
            {"success": True, "count": 42},
            requests.ConnectionError("offline"),
            {"success": False},
            {"success": True, "count": "many"},
            {"success": True, "count": 43},
        )
        counts = []
        subscription = PresenceSubscription(counts.append, config=config, session=session)

        cancel = subscription.start()
        await wait_for(lambda: len(counts) >= 2)
        cancel()

        assert counts[:2] == [42, 43]
        assert 0 not in counts
        assert subscription.last_count == 43

    @pytest.mark.asyncio
    async def test_poll_once_rejects_negative_count(self):
        strategy = PollingPresenceStrategy(
            "http://api.test/api/users/online",
            POLL_INTERVAL,
            emit=lambda n: None,
            session=scripted_session({"success": True, "count": -1}),
        )
        assert await strategy.poll_once() is None

    @pytest.mark.asyncio
    async def test_cancel_during_in_flight_poll(self, config):
        started = threading.Event()
        release = threading.Event()
        session = Mock()

        def slow_get(url, timeout=None):
            started.set()
            release.wait(timeout=5)
            return _json_response({"success": True, "count": 7})

        session.get.side_effect = slow_get
        counts = []
        cancel = PresenceSubscription(counts.append, config=config, session=session).start()

        while not started.is_set():
            await asyncio.sleep(POLL_INTERVAL / 5)
        cancel()
        release.set()
        await asyncio.sleep(POLL_INTERVAL * 2)

        assert counts == []

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, config):
        session = scripted_session({"success": True, "count": 42})
        subscription = PresenceSubscription(lambda n: None, config=config, session=session)
        cancel = subscription.start()

        cancel()
        cancel()
        await asyncio.sleep(POLL_INTERVAL * 2)

        assert subscription.active is False
        session.get.assert_not_called()
