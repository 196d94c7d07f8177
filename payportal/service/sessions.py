from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from payportal.logging import get_logger
from payportal.service.client_ip import normalize_ip
from payportal.storage.models import Role

logger = get_logger(__name__)

# 32 random bytes -> 256 bits of entropy
SESSION_ID_BYTES = 32
# Sessions still waiting for their first token are swept after this long
PENDING_TOKEN_GRACE = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionRecord:
    id: str
    principal: str
    ip: str
    role: Role
    created_at: datetime
    token: str = ""
    expires_at: Optional[datetime] = None


class SessionStore:
    """Process-wide table of live sessions.

    Every operation runs under one lock; callers only ever receive immutable
    snapshots of the records.
    """

    def __init__(self, *, now: Callable[[], datetime] = _utcnow) -> None:
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()
        self._now = now

    def create(self, ip: str, principal: str, role: Role) -> str:
        record = SessionRecord(
            id=secrets.token_urlsafe(SESSION_ID_BYTES),
            principal=principal,
            ip=normalize_ip(ip),
            role=Role(role),
            created_at=self._now(),
        )
        with self._lock:
            self._sessions[record.id] = record
        logger.info("session_created", session_id=record.id, principal=principal, role=record.role.value)
        return record.id

    def attach_token(
        self, session_id: str, token: str, expires_at: Optional[datetime] = None
    ) -> bool:
        """Bind ``token`` as the only valid token for the session.

        ``expires_at`` is the token's expiry; :meth:`sweep` drops the record
        once it has passed. Returns False when the session does not exist; no
        record is created.
        """
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                found = False
            else:
                self._sessions[session_id] = replace(record, token=token, expires_at=expires_at)
                found = True
        if not found:
            logger.warning("session_attach_token_missing", session_id=session_id)
        return found

    def lookup(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._sessions.get(session_id)

    def invalidate(self, session_id: str) -> None:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.info("session_invalidated", session_id=session_id, principal=removed.principal)

    def invalidate_principal(self, principal: str) -> int:
        """Drop every session owned by ``principal``; returns the count removed."""
        with self._lock:
            stale = [sid for sid, rec in self._sessions.items() if rec.principal == principal]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.info("principal_sessions_invalidated", principal=principal, count=len(stale))
        return len(stale)

    def sweep(self) -> int:
        """Drop sessions whose token has expired, or that never received one.

        Returns how many records were removed.
        """
        now = self._now()
        pending_cutoff = now - PENDING_TOKEN_GRACE
        with self._lock:
            stale = [
                sid
                for sid, rec in self._sessions.items()
                if (rec.expires_at is not None and rec.expires_at <= now)
                or (not rec.token and rec.created_at <= pending_cutoff)
            ]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.info("expired_sessions_swept", count=len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
