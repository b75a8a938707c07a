"""
Job Portal API - online users presence endpoints.

Polling clients read the online-users count here; clients announce
themselves with POST and leave with DELETE. Membership lives in the
process presence hub, so realtime subscribers and polling clients see
the same headcount.
"""
import logging

from fastapi import FastAPI, Path

from config.settings import settings
from jobportal.cache import get_cache_manager
from jobportal.presence import PresenceRecord, get_presence_hub

# Configure logging for presence and cache lifecycle messages
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("api")

# Version tracking
APP_VERSION = "v1.0.0"
APP_NAME = "DataJobPortal"

app = FastAPI(
    title=APP_NAME,
    description="Online users presence and offline cache diagnostics",
    version=APP_VERSION,
)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "cache_generation": settings.cache_generation,
    }


@app.get("/api/users/online")
def online_users():
    """
    Current online users count.

    Always answers success; an empty channel or a failure reports the
    placeholder count instead of zero.
    """
    try:
        count = get_presence_hub().member_count(settings.presence_channel)
    except Exception as e:
        logger.error(f"Error getting online users: {e}")
        count = 0
    return {"success": True, "count": count or settings.presence_placeholder_count}


@app.post("/api/users/online/{client_id}")
def join_online_users(client_id: str = Path(..., min_length=1, max_length=128)):
    """Mark a client as online (repeat calls refresh its timestamp)."""
    hub = get_presence_hub()
    hub.join(settings.presence_channel, client_id, PresenceRecord().to_dict())
    return {"success": True, "count": hub.member_count(settings.presence_channel)}


@app.delete("/api/users/online/{client_id}")
def leave_online_users(client_id: str = Path(..., min_length=1, max_length=128)):
    """Mark a client as offline."""
    hub = get_presence_hub()
    removed = hub.leave(settings.presence_channel, client_id)
    return {
        "success": True,
        "removed": removed,
        "count": hub.member_count(settings.presence_channel),
    }


@app.get("/api/cache/stats")
def cache_stats():
    """Offline cache manager statistics."""
    return get_cache_manager().get_stats()
