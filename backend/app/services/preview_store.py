"""Short-lived server-side holder for preview uploads.

The preview response only carries an opaque token; the raw document bytes stay
here until the reviewer confirms or the entry expires.  Nothing in this store is
authoritative for duplicate detection, the database is.
"""

from __future__ import annotations

import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import Lock
from typing import Optional

_MAX_SESSIONS = 500
_TTL_SECONDS = 30 * 60


@dataclass
class StoredDocument:
    file_name: str
    content_hash: str
    content: bytes = field(repr=False)


@dataclass
class PreviewSession:
    period: str
    institution_id: Optional[str]
    documents: dict[str, StoredDocument] = field(default_factory=dict)  # keyed by content hash
    created_at: float = field(default_factory=time.monotonic)

    def add(self, document: StoredDocument) -> None:
        self.documents.setdefault(document.content_hash, document)


class PreviewStore:
    def __init__(
        self,
        *,
        ttl_seconds: int = _TTL_SECONDS,
        max_sessions: int = _MAX_SESSIONS,
    ) -> None:
        self._sessions: OrderedDict[str, PreviewSession] = OrderedDict()
        self._lock = Lock()
        self._ttl_seconds = max(1, int(ttl_seconds))
        self._max_sessions = max(1, int(max_sessions))

    def put(self, session: PreviewSession) -> str:
        token = secrets.token_urlsafe(24)
        now = time.monotonic()
        with self._lock:
            self._prune_expired(now)
            while len(self._sessions) >= self._max_sessions:
                self._sessions.popitem(last=False)
            session.created_at = now
            self._sessions[token] = session
        return token

    def get(self, token: str) -> Optional[PreviewSession]:
        now = time.monotonic()
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            if now - session.created_at >= self._ttl_seconds:
                del self._sessions[token]
                return None
            return session

    def discard(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)

    def _prune_expired(self, now: float) -> None:
        """Drop expired sessions (called under lock)."""
        expired = [token for token, s in self._sessions.items() if now - s.created_at >= self._ttl_seconds]
        for token in expired:
            del self._sessions[token]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def reset(self) -> None:
        with self._lock:
            self._sessions.clear()
