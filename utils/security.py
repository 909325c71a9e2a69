"""Security helpers for headers, input sanitation, and login throttling."""
import html
import time
from typing import Mapping

from flask import request


def sanitize_input(data: Mapping) -> dict:
    """Return a sanitized copy of incoming query data to reduce injection risk."""
    sanitized = {}
    for key, value in data.items():
        sanitized[html.escape(str(key))] = html.escape(str(value))
    return sanitized


def apply_security_headers(response, force_https: bool = False):
    """Headers for a JSON-only API."""
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cache-Control", "no-store")
    if force_https or request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    return response


# In-process throttle; swap for a shared store when running several workers.
_attempts: dict[str, list[float]] = {}


def track_attempt(key: str, limit: int = 10, window_seconds: int = 900) -> bool:
    """Record an attempt for key; False once the limit is exceeded within the window."""
    now = time.time()
    recent = [ts for ts in _attempts.get(key, []) if now - ts < window_seconds]
    recent.append(now)
    _attempts[key] = recent
    return len(recent) <= limit


def reset_attempts(key: str) -> None:
    _attempts.pop(key, None)
