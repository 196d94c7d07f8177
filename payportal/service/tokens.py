"""Signed, expiring bearer tokens.

Tokens are compact HS256 JWTs. The codec only answers "is this token ours and
still within its lifetime"; whether the session it names is still live is the
guard's job.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from payportal.config import Settings
from payportal.logging import get_logger
from payportal.service.errors import ConfigurationError, Expired, InvalidSignature, Malformed
from payportal.storage.models import Role

logger = get_logger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "access"


@dataclass(frozen=True)
class TokenClaims:
    principal: str
    role: Role
    session_id: str
    issued_at: int
    expires_at: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str = "payportal",
        audience: str = "payportal-clients",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ConfigurationError(
                "no token signing key configured; set JWT_SECRET before starting the service"
            )
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(self, principal: str, role: Role, session_id: str, ttl_seconds: int) -> str:
        """Mint a token for ``session_id`` that expires ``ttl_seconds`` from now."""
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must not be negative")
        issued_at = int(self._clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": principal,
            "role": Role(role).value,
            "sid": session_id,
            "token_type": TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + int(ttl_seconds),
        }
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        """Verify signature, structure and expiry, returning the claims.

        Raises:
            Malformed: token cannot be parsed or carries unexpected claims
            InvalidSignature: signature does not match
            Expired: current time is at or past ``exp``
        """
        if not isinstance(token, str):
            raise Malformed("token must be a string")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise Malformed("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError) as exc:
            raise Malformed("token header is not valid JSON") from exc
        # Pin the algorithm so a forged header cannot select another one
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != ALGORITHM:
            logger.warning("token_invalid_algorithm", alg=alg)
            raise Malformed("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignature("token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError) as exc:
            raise Malformed("token payload is not valid JSON") from exc
        claims = self._claims_from_payload(payload)

        if self._clock() >= claims.expires_at:
            raise Expired("token expired", claims=claims)
        return claims

    def _claims_from_payload(self, payload: Any) -> TokenClaims:
        if not isinstance(payload, dict):
            raise Malformed("token payload must be an object")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise Malformed("token issuer or audience mismatch")
        if payload.get("token_type") != TOKEN_TYPE:
            raise Malformed("unexpected token type")
        principal = payload.get("sub")
        session_id = payload.get("sid")
        if not isinstance(principal, str) or not principal:
            raise Malformed("token subject missing")
        if not isinstance(session_id, str) or not session_id:
            raise Malformed("token session id missing")
        try:
            role = Role(payload.get("role"))
        except ValueError as exc:
            raise Malformed("token role not recognised") from exc
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        for value in (issued_at, expires_at):
            if isinstance(value, bool) or not isinstance(value, int):
                raise Malformed("token timestamps must be integers")
        return TokenClaims(
            principal=principal,
            role=role,
            session_id=session_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )
