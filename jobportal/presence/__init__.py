"""
Online-users presence: realtime channel with polling fallback.
"""
from .models import (
    PresenceError,
    PresenceEvent,
    PresencePayload,
    PresenceRecord,
    SubscriptionStatus,
    count_members,
)
from .transport import (
    LocalPresenceChannel,
    LocalPresenceHub,
    PresenceChannel,
    PresenceTransport,
    get_presence_hub,
)
from .provider import (
    ChannelPresenceStrategy,
    PollingPresenceStrategy,
    PresenceStrategy,
    PresenceSubscription,
    create_presence_subscription,
)

__all__ = [
    # Models
    "PresenceError",
    "PresenceEvent",
    "PresencePayload",
    "PresenceRecord",
    "SubscriptionStatus",
    "count_members",
    # Transport
    "LocalPresenceChannel",
    "LocalPresenceHub",
    "PresenceChannel",
    "PresenceTransport",
    "get_presence_hub",
    # Provider
    "ChannelPresenceStrategy",
    "PollingPresenceStrategy",
    "PresenceStrategy",
    "PresenceSubscription",
    "create_presence_subscription",
]
