from __future__ import annotations

import hmac
import time
from dataclasses import dataclass
from typing import Callable, Optional

from payportal.logging import get_logger
from payportal.service.client_ip import normalize_ip, same_client
from payportal.service.errors import (
    AuthenticationError,
    AuthFailure,
    Expired,
    ForbiddenError,
    TokenError,
)
from payportal.service.sessions import SessionStore
from payportal.service.tokens import TokenCodec
from payportal.storage.models import Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    principal: str
    session_id: str
    role: Role


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthGuard:
    """Request-time gate in front of every protected handler.

    Checks run in a fixed order and stop at the first failure: bearer token
    present, token verifies, session exists, token is the session's current
    one, client address matches the session's, token not past expiry by the
    guard's own clock. Address mismatch and expiry burn the session before
    the error is raised.
    """

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionStore,
        *,
        clock: Callable[[], float] = time.time,
        allow_loopback_equivalence: bool = True,
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self._clock = clock
        self.allow_loopback_equivalence = allow_loopback_equivalence

    def _fail(self, reason: AuthFailure, **context) -> AuthenticationError:
        log_fn = logger.warning if reason == AuthFailure.HIJACK_DETECTED else logger.info
        log_fn("auth_rejected", reason=reason.value, **context)
        return AuthenticationError(reason)

    def authenticate(self, authorization: Optional[str], client_ip: str) -> AuthContext:
        token = extract_bearer(authorization)
        if token is None:
            raise self._fail(AuthFailure.TOKEN_MISSING)

        try:
            claims = self.codec.verify(token)
        except Expired as exc:
            # Signature was valid; retire the session only if this token is still its current one
            if exc.claims is not None:
                record = self.sessions.lookup(exc.claims.session_id)
                if record is not None and hmac.compare_digest(record.token, token):
                    self.sessions.invalidate(record.id)
            raise self._fail(AuthFailure.TOKEN_EXPIRED, stage="codec") from exc
        except TokenError as exc:
            raise self._fail(AuthFailure.INVALID_TOKEN, error=type(exc).__name__) from exc

        record = self.sessions.lookup(claims.session_id)
        if record is None:
            raise self._fail(AuthFailure.SESSION_INVALID, session_id=claims.session_id)

        if not record.token or not hmac.compare_digest(record.token, token):
            raise self._fail(AuthFailure.SESSION_INVALID, session_id=record.id, superseded=True)

        observed_ip = normalize_ip(client_ip)
        if not same_client(
            record.ip,
            observed_ip,
            allow_loopback_equivalence=self.allow_loopback_equivalence,
        ):
            self.sessions.invalidate(record.id)
            logger.warning(
                "session_hijack_detected",
                session_id=record.id,
                principal=record.principal,
                bound_ip=record.ip,
                observed_ip=observed_ip,
            )
            raise self._fail(AuthFailure.HIJACK_DETECTED, session_id=record.id)

        # Second expiry check against the guard's clock, independent of the codec's
        if self._clock() >= claims.expires_at:
            self.sessions.invalidate(record.id)
            raise self._fail(AuthFailure.TOKEN_EXPIRED, session_id=record.id, stage="guard")

        return AuthContext(principal=record.principal, session_id=record.id, role=record.role)


class RoleGuard:
    """Restricts an authenticated context to one role."""

    def __init__(self, required: Role) -> None:
        self.required = Role(required)

    def check(self, ctx: Optional[AuthContext]) -> AuthContext:
        if ctx is None:
            # Ran without the authentication guard in front of it
            logger.error("role_guard_without_identity", required_role=self.required.value)
            raise AuthenticationError(AuthFailure.TOKEN_MISSING)
        if ctx.role != self.required:
            logger.info(
                "role_rejected",
                principal=ctx.principal,
                role=ctx.role.value,
                required_role=self.required.value,
            )
            raise ForbiddenError(f"{self.required.value} access required")
        return ctx
