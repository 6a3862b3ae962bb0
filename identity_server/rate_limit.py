"""
Rate limiting. In-memory sliding window per key (client IP and endpoint).
Applied to POST /account/login and POST /token to slow down credential guessing.
"""
import math
import threading
import time

from fastapi import HTTPException, Request

_store: dict[str, list[float]] = {}
_lock = threading.Lock()
_WINDOW_SECONDS = 60


def check_and_consume(
    key: str,
    limit: int,
    window_seconds: int = _WINDOW_SECONDS,
) -> tuple[bool, int | None]:
    """
    Check if the key is under the limit for the sliding window; if so, record this request.
    Returns (allowed, retry_after_seconds). When not allowed, retry_after_seconds is the
    suggested Retry-After value (>= 1).
    """
    if limit <= 0:
        return True, None
    now = time.monotonic()
    with _lock:
        timestamps = _store.setdefault(key, [])
        cutoff = now - window_seconds
        timestamps[:] = [t for t in timestamps if t > cutoff]
        if len(timestamps) >= limit:
            retry_after = max(1, math.ceil(window_seconds - (now - min(timestamps))))
            return False, retry_after
        timestamps.append(now)
        return True, None


def enforce(request: Request, bucket: str, limit: int) -> None:
    """Raise 429 with Retry-After when the caller's IP exceeded limit for bucket."""
    ip = request.client.host if request.client else "unknown"
    allowed, retry_after = check_and_consume(f"{bucket}:{ip}", limit)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests",
            headers={"Retry-After": str(retry_after)},
        )


def reset() -> None:
    with _lock:
        _store.clear()
