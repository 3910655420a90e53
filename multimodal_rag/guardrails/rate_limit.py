import threading
import time
from collections import defaultdict
from typing import Dict, Optional

from fastapi import HTTPException
from starlette.requests import Request

ANONYMOUS_USER = "anonymous"


class SimpleRateLimiter:
    """Sliding-window rate limiter; in-memory (per process). Used by API to cap requests per client IP.
    Why available: Protects the API from abuse and ensures fair usage across clients."""

    def __init__(self, max_requests: int, window_seconds: int):
        """Configure limiter: max_requests per window_seconds per client IP."""
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.storage = defaultdict(list)  # ip -> [timestamps]
        self._lock = threading.Lock()

    def check(self, request: Request):
        """Raise 429 if the client has exceeded the rate limit; otherwise record the request. Called on each protected endpoint."""
        now = time.time()
        ip = request.client.host if request.client else "unknown"

        with self._lock:
            # Remove expired timestamps
            self.storage[ip] = [
                t for t in self.storage[ip] if now - t < self.window_seconds
            ]

            if len(self.storage[ip]) >= self.max_requests:
                raise HTTPException(
                    status_code=429,
                    detail="Rate limit exceeded. Please retry later.",
                )

            self.storage[ip].append(now)


class UploadConcurrencyLimiter:
    """Caps in-flight ingestion jobs per user; a slot is taken at upload time and released when the job's worker finishes.
    Why available: One user dropping a folder of PDFs must not monopolise the worker pool."""

    def __init__(self, max_per_user: int = 3):
        self.max_per_user = max_per_user
        self._active: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def try_acquire(self, user_id: Optional[str]) -> bool:
        key = user_id or ANONYMOUS_USER
        with self._lock:
            if self._active[key] >= self.max_per_user:
                return False
            self._active[key] += 1
            return True

    def release(self, user_id: Optional[str]) -> None:
        key = user_id or ANONYMOUS_USER
        with self._lock:
            if self._active.get(key, 0) <= 1:
                self._active.pop(key, None)
            else:
                self._active[key] -= 1
