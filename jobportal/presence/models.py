"""
Data models for online-users presence.

These types are shared by the realtime channel and the polling fallback,
so the UI sees the same shape whichever transport is in use.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List


class PresenceEvent(Enum):
    """Membership events emitted by a presence channel."""
    SYNC = "sync"     # Full membership state received
    JOIN = "join"
    LEAVE = "leave"


class SubscriptionStatus(Enum):
    """Channel subscription acknowledgements."""
    SUBSCRIBED = "SUBSCRIBED"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"


class PresenceError(Exception):
    """Raised on presence transport misuse (e.g. tracking before subscribing)."""


@dataclass
class PresenceRecord:
    """What a client announces about itself when it joins a channel."""
    online_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {"online_at": self.online_at}


@dataclass
class PresencePayload:
    """Delivered to join/leave handlers."""
    key: str
    new_presences: List[Dict[str, Any]] = field(default_factory=list)
    left_presences: List[Dict[str, Any]] = field(default_factory=list)


# Membership snapshot: presence key -> records tracked under that key
PresenceState = Dict[str, List[Dict[str, Any]]]

# Count-changed callback supplied by the UI
CountCallback = Callable[[int], None]

# Teardown handle returned to the UI
CancelHandle = Callable[[], None]


def count_members(state: PresenceState) -> int:
    """Number of distinct participants in a membership snapshot."""
    return len(state)
