from __future__ import annotations

import os
import threading
import time
from functools import wraps

from flask import current_app, has_app_context, jsonify, request, g

try:
    import redis
except Exception:  # pragma: no cover - optional dependency fallback
    redis = None


_LOCK = threading.Lock()
_WINDOWS: dict[str, list[float]] = {}
_CLIENT = None
_CLIENT_INIT = False


def check_limit(key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    """Fixed-window counter in Redis, sliding window in process memory otherwise."""
    safe_window = max(1, int(window_seconds))
    safe_limit = max(1, int(limit))
    client = _get_client()
    if client is not None:
        now_sec = int(time.time())
        counter_key = f"kmarket:rl:{key}:{now_sec // safe_window}"
        try:
            current = int(client.incr(counter_key))
            if current == 1:
                client.expire(counter_key, safe_window + 1)
            if current <= safe_limit:
                return True, 0
            return False, int(max(1, safe_window - (now_sec % safe_window)))
        except Exception:
            pass
    return _check_limit_memory(key, limit=safe_limit, window_seconds=safe_window)


def _check_limit_memory(key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    now = time.time()
    start = now - window_seconds
    with _LOCK:
        bucket = [ts for ts in _WINDOWS.get(key, []) if ts >= start]
        if len(bucket) >= limit:
            _WINDOWS[key] = bucket
            return False, int(max(1, window_seconds - (now - min(bucket))))
        bucket.append(now)
        _WINDOWS[key] = bucket
    return True, 0


def reset_memory_windows() -> None:
    with _LOCK:
        _WINDOWS.clear()


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def rate_limit_enabled() -> bool:
    if has_app_context() and bool(current_app.config.get("TESTING")):
        return _env_bool("RATE_LIMIT_IN_TESTS", False)
    return _env_bool("RATE_LIMIT_ENABLED", True)


def _get_client():
    global _CLIENT, _CLIENT_INIT
    with _LOCK:
        if _CLIENT_INIT:
            return _CLIENT
        _CLIENT_INIT = True
    url = (os.getenv("RATE_LIMIT_REDIS_URL") or os.getenv("REDIS_URL") or "").strip()
    if redis is None or not url:
        return None
    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=0.75,
            socket_timeout=0.75,
        )
        client.ping()
    except Exception:
        return None
    with _LOCK:
        _CLIENT = client
    return client


def resolve_client_ip(req) -> str:
    if _env_bool("TRUST_PROXY_HEADERS", False):
        xff = (req.headers.get("X-Forwarded-For") or "").strip()
        if xff:
            first_hop = xff.split(",")[0].strip()
            if first_hop:
                return first_hop
    return (req.remote_addr or "").strip() or "unknown"


def rate_limit(key: str, per_seconds: int, limit: int, *, scope: str = "user"):
    """Reject with 429 once ``limit`` calls happened within ``per_seconds``.

    ``scope="user"`` buckets by the authenticated user set on ``g`` by the
    auth helper and falls back to the client IP.
    """

    def decorator(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if not rate_limit_enabled():
                return fn(*args, **kwargs)
            user_id = getattr(g, "auth_user_id", None)
            if scope == "user" and user_id is not None:
                bucket = f"{key}:u:{int(user_id)}"
            else:
                bucket = f"{key}:ip:{resolve_client_ip(request)}"
            ok, retry_after = check_limit(bucket, limit=limit, window_seconds=per_seconds)
            if ok:
                return fn(*args, **kwargs)
            return (
                jsonify(
                    {
                        "ok": False,
                        "error": "RATE_LIMITED",
                        "message": "Too many requests. Please retry later.",
                        "retry_after": int(retry_after or 0),
                    }
                ),
                429,
            )

        return wrapped

    return decorator
