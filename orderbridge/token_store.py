# orderbridge/token_store.py
import asyncio
import logging
import secrets
import threading
import time
from typing import Any, Callable, Optional

from orderbridge.models import TokenAction, TokenContext, VerificationToken

logger = logging.getLogger("orderbridge")


class TokenStore:
    """
    Process-local registry of single-use, time-limited verification tokens.

    - resolve() is get-and-delete under the lock: a token can be resolved once.
    - expiry is enforced twice: a timer evicts the entry after ttl_seconds,
      and every lookup re-checks expires_at so an entry whose timer has not
      fired yet is still treated as missing.
    - nothing is persisted; a restart drops every outstanding token.
    """

    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[str, VerificationToken] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def issue(
        self,
        context: TokenContext,
        details: Optional[dict[str, Any]] = None,
        action: Optional[TokenAction] = None,
    ) -> str:
        token_id = secrets.token_hex(16)
        token = VerificationToken(
            id=token_id,
            context=context,
            details=dict(details or {}),
            expires_at=self._clock() + self.ttl_seconds,
            action=action,
        )
        with self._lock:
            self._items[token_id] = token
        self._schedule_eviction(token_id)
        return token_id

    def peek(self, token_id: str) -> Optional[VerificationToken]:
        """Read-only lookup, used to render the verification page."""
        with self._lock:
            token = self._items.get(token_id)
            if token is None:
                return None
            if token.expires_at <= self._clock():
                self._drop_unlocked(token_id)
                return None
            return token

    def resolve(self, token_id: str) -> Optional[VerificationToken]:
        """Removes the token and returns it, or None if missing or expired."""
        with self._lock:
            token = self._drop_unlocked(token_id)
        if token is None:
            return None
        if token.expires_at <= self._clock():
            return None
        return token

    def evict(self, token_id: str) -> bool:
        with self._lock:
            return self._drop_unlocked(token_id) is not None

    def sweep_expired(self) -> int:
        """
        Delete expired tokens. Safe to call from a periodic loop.
        Returns how many entries were removed.
        """
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._items.items() if v.expires_at <= now]
            for k in expired:
                self._drop_unlocked(k)
        return len(expired)

    def _drop_unlocked(self, token_id: str) -> Optional[VerificationToken]:
        timer = self._timers.pop(token_id, None)
        if timer is not None:
            timer.cancel()
        return self._items.pop(token_id, None)

    def _schedule_eviction(self, token_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop (sync callers, scripts): lazy checks and sweeps still apply
            return
        handle = loop.call_later(self.ttl_seconds, self.evict, token_id)
        with self._lock:
            if token_id in self._items:
                self._timers[token_id] = handle
            else:
                handle.cancel()
