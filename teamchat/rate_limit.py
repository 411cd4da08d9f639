"""
Per-team in-memory rate limiter for outbound send endpoints.

Sliding window of request times per team. Not shared across processes, which
matches the single-instance deployment model. Teams with no request inside the
window are dropped on the next sweep, so memory tracks active teams only.
"""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from uuid import UUID

from teamchat.config import RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW_SEC


class RateLimiter:
    def __init__(self, max_requests: int = RATE_LIMIT_REQUESTS, window_sec: float = RATE_LIMIT_WINDOW_SEC) -> None:
        self.max_requests = max_requests
        self.window_sec = window_sec
        self._lock = Lock()
        self._hits: dict[UUID, deque[float]] = {}
        self._next_sweep = 0.0

    def check(self, team_id: UUID, now: float | None = None) -> tuple[bool, float | None]:
        """(allowed, retry_after_seconds); retry_after is None when allowed."""
        now = time.monotonic() if now is None else now
        cutoff = now - self.window_sec
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(cutoff)
                self._next_sweep = now + self.window_sec
            hits = self._hits.setdefault(team_id, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return False, round(max(0.0, hits[0] - cutoff), 1)
            hits.append(now)
        return True, None

    def _sweep(self, cutoff: float) -> None:
        idle = [team_id for team_id, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for team_id in idle:
            del self._hits[team_id]

    @property
    def tracked_teams(self) -> int:
        return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._next_sweep = 0.0
