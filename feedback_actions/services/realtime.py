"""
Real-time event publisher.

Best-effort fan-out of notification events to per-user (``user:<id>``) and
per-tenant (``tenant:<id>``) channels. The persisted Notification row is the
durable record; a lost publish is never an error for the caller.

Uses Redis pub/sub in production (via REDIS_URL), falls back to an in-memory
recorder for development/testing.
"""

import json
import logging
from collections import deque

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)


# ── In-memory fallback ───────────────────────────────────────────────────


class _MemoryBackend:
    """Records published messages; tests read them back via ``published``."""

    def __init__(self, maxlen=1000):
        self.published = deque(maxlen=maxlen)

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def ping(self):
        return True


# ── Singleton backend ────────────────────────────────────────────────────

_backend = None


def _redis_url():
    if has_app_context():
        return current_app.config.get("REDIS_URL")
    return None


def _get_backend():
    """Lazy-initialise Redis or fall back to in-memory."""
    global _backend
    if _backend is not None:
        return _backend

    redis_url = _redis_url()
    if redis_url and not redis_url.startswith("memory://"):
        try:
            import redis as _redis
            _backend = _redis.from_url(redis_url, decode_responses=True)
            _backend.ping()
            logger.info("Realtime: publishing to Redis at %s", redis_url.split("@")[-1])
        except Exception as exc:
            logger.warning("Redis unavailable (%s); realtime events recorded in memory", exc)
            _backend = _MemoryBackend()
    else:
        _backend = _MemoryBackend()
    return _backend


def reset_backend():
    """Drop the cached backend (tests, config reload)."""
    global _backend
    _backend = None


def recorded_events(channel: str | None = None) -> list[dict]:
    """Return events captured by the in-memory backend (empty for Redis)."""
    backend = _get_backend()
    if not isinstance(backend, _MemoryBackend):
        return []
    return [
        json.loads(message) for ch, message in backend.published
        if channel is None or ch == channel
    ]


# ── Public API ───────────────────────────────────────────────────────────


def user_channel(user_id) -> str:
    return f"user:{user_id}"


def tenant_channel(tenant_id) -> str:
    return f"tenant:{tenant_id}"


def emit(channel: str, event: str, payload: dict) -> bool:
    """Publish ``{"event", "payload"}`` on a channel. Never raises."""
    try:
        message = json.dumps({"event": event, "payload": payload}, default=str)
        _get_backend().publish(channel, message)
        return True
    except Exception as exc:
        logger.warning("Realtime emit to %s failed: %s", channel, exc)
        return False


def emit_to_user(user_id, event: str, payload: dict) -> bool:
    return emit(user_channel(user_id), event, payload)


def emit_to_tenant(tenant_id, event: str, payload: dict) -> bool:
    return emit(tenant_channel(tenant_id), event, payload)
