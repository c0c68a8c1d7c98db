"""
Challenge Cache - Pending challenges keyed by token.

LRU-bounded with a per-entry TTL. A token is consumed by pop(), so the same
challenge cannot be verified twice.
"""
import secrets
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from loguru import logger

from .scoring import ChallengeServed


class ChallengeCache:
    def __init__(
        self,
        max_size: int = 10_000,
        ttl_seconds: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._entries: OrderedDict[str, tuple[ChallengeServed, float]] = OrderedDict()
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @ttl_seconds.setter
    def ttl_seconds(self, value: float) -> None:
        """Applies to challenges stored from now on"""
        if value <= 0:
            raise ValueError(f"ttl must be positive, got {value}")
        self._ttl = value

    @staticmethod
    def new_token() -> str:
        return secrets.token_urlsafe(24)

    def put(self, state: ChallengeServed) -> None:
        """Store a served challenge, evicting the oldest entry at capacity"""
        with self._lock:
            if state.token in self._entries:
                self._entries.move_to_end(state.token)
            elif len(self._entries) >= self._max_size:
                oldest, _ = self._entries.popitem(last=False)
                logger.debug(f"Challenge evicted: {oldest[:8]}")
            self._entries[state.token] = (state, self._clock() + self._ttl)

    def pop(self, token: str) -> Optional[ChallengeServed]:
        """Consume a token. Unknown or expired tokens return None."""
        with self._lock:
            entry = self._entries.pop(token, None)
        if entry is None:
            return None
        state, expires_at = entry
        if expires_at <= self._clock():
            return None
        return state

    def peek(self, token: str) -> Optional[ChallengeServed]:
        with self._lock:
            entry = self._entries.get(token)
        if entry is None or entry[1] <= self._clock():
            return None
        return entry[0]

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [t for t, (_, exp) in self._entries.items() if exp <= now]
            for t in expired:
                del self._entries[t]
        return len(expired)

    def __contains__(self, token: str) -> bool:
        return self.peek(token) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
