from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from payportal.config import Settings
from payportal.logging import get_logger
from payportal.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    RateLimitedError,
)
from payportal.service.guard import AuthContext
from payportal.service.login_attempts import LoginAttemptTracker
from payportal.service.sessions import SessionStore
from payportal.service.tokens import TokenCodec
from payportal.storage.errors import DuplicateRecord
from payportal.storage.models import Role, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthStore(Protocol):
    def create_user(
        self,
        name: str,
        *,
        role: Role = Role.CUSTOMER,
        account_number: Optional[str] = None,
    ) -> User: ...

    def get_user_by_name(self, name: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class LoginResult:
    user: User
    session_id: str
    token: str
    expires_at: datetime


class AuthService:
    """Signup, login and logout flows over the session security core."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        codec: TokenCodec,
        sessions: SessionStore,
        attempts: LoginAttemptTracker,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec
        self.sessions = sessions
        self.attempts = attempts
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the principal is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("payportal-timing-equalizer")
        self._now = now
        self._last_cleanup = now()
        self.logger = logger

    @property
    def token_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    def cleanup_expired_states(self) -> int:
        """Evict expired sessions and elapsed lockout records.

        Returns:
            Number of entries removed across both tables
        """
        sessions = self.sessions.sweep()
        attempts = self.attempts.sweep()
        if sessions or attempts:
            self.logger.debug("auth_state_cleanup", sessions=sessions, attempts=attempts)
        self._last_cleanup = self._now()
        return sessions + attempts

    def maybe_cleanup(self, interval_minutes: int = 5) -> int:
        """Run cleanup if ``interval_minutes`` have passed since the last one.

        Returns:
            Number of entries cleaned, or 0 if cleanup was skipped
        """
        now = self._now()
        if (now - self._last_cleanup).total_seconds() >= interval_minutes * 60:
            return self.cleanup_expired_states()
        return 0

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: Optional[str], password: str) -> bool:
        """Check ``password`` against the stored hash for ``user_id``."""
        record = self.store.get_password_record(user_id) if user_id else None
        stored_hash, algo = record if record else (self._dummy_hash, PASSWORD_ALGO)
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            matched = self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            matched = False
        return matched and record is not None

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    async def signup(self, name: str, password: str, account_number: str) -> User:
        try:
            user = self.store.create_user(
                name, role=Role.CUSTOMER, account_number=account_number
            )
        except DuplicateRecord as exc:
            # Same message for name and account clashes
            raise ConflictError("account already exists") from exc
        self.save_password(user.id, password)
        self.logger.info("customer_signed_up", user_id=user.id, principal=user.name)
        return user

    def _credentials_match(
        self,
        user: Optional[User],
        password: str,
        role: Role,
        account_number: Optional[str],
    ) -> bool:
        password_ok = self.verify_password(user.id if user else None, password)
        if not user or not user.is_active or user.role != role:
            return False
        if role == Role.CUSTOMER:
            if not account_number or not user.account_number:
                return False
            if not hmac.compare_digest(user.account_number, account_number):
                return False
        return password_ok

    async def login(
        self,
        name: str,
        password: str,
        *,
        client_ip: str,
        role: Role = Role.CUSTOMER,
        account_number: Optional[str] = None,
    ) -> LoginResult:
        """Verify credentials and open a session bound to ``client_ip``.

        Raises:
            RateLimitedError: the identifier is locked out
            InvalidCredentialsError: credentials rejected (counted toward lockout)
        """
        self.maybe_cleanup()
        if self.attempts.is_locked(name):
            retry_after = self.attempts.retry_after(name)
            self.logger.warning("login_locked", principal=name, retry_after=retry_after)
            raise RateLimitedError(
                "too many failed login attempts, try again later",
                retry_after=retry_after,
            )

        user = self.store.get_user_by_name(name)
        if not self._credentials_match(user, password, Role(role), account_number):
            failures = self.attempts.record_failure(name)
            self.logger.info("login_failed", principal=name, failures=failures, client_ip=client_ip)
            raise InvalidCredentialsError()

        self.attempts.clear(name)
        session_id = self.sessions.create(client_ip, user.name, user.role)
        token = self.codec.issue(user.name, user.role, session_id, self.token_ttl_seconds)
        expires_at = datetime.fromtimestamp(self.codec.verify(token).expires_at, tz=timezone.utc)
        # Session must exist before the token that names it can be minted
        self.sessions.attach_token(session_id, token, expires_at=expires_at)
        self.logger.info(
            "login_succeeded",
            principal=user.name,
            role=user.role.value,
            session_id=session_id,
            client_ip=client_ip,
        )
        return LoginResult(
            user=user,
            session_id=session_id,
            token=token,
            expires_at=expires_at,
        )

    async def logout(self, ctx: AuthContext, session_id: Optional[str] = None) -> str:
        """Invalidate the caller's session, or another session the caller owns."""
        target = session_id or ctx.session_id
        if target != ctx.session_id:
            record = self.sessions.lookup(target)
            if record is not None and record.principal != ctx.principal:
                raise ForbiddenError("cannot revoke another user's session")
        self.sessions.invalidate(target)
        self.logger.info("logout", principal=ctx.principal, session_id=target)
        return target

    def ensure_employee(self, name: str, password: str) -> User:
        """Create the employee account, or reset its password and role if it exists."""
        user = self.store.get_user_by_name(name)
        if user is None:
            user = self.store.create_user(name, role=Role.EMPLOYEE)
            status = "created"
        else:
            if user.role != Role.EMPLOYEE:
                user = self.store.update_user_role(user.id, Role.EMPLOYEE) or user
                # Customer sessions must not survive a role change
                self.sessions.invalidate_principal(user.name)
            status = "updated"
        self.save_password(user.id, password)
        self.logger.info("employee_account_ready", principal=user.name, status=status)
        return user
