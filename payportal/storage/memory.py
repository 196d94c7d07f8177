from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Optional

from payportal.logging import get_logger
from payportal.storage.errors import DuplicateRecord, MissingReference
from payportal.storage.models import Payment, PaymentStatus, Role, User, utcnow


class MemoryStore:
    """In-process store for users, credentials and payments.

    Returned objects are copies; callers change state only through store methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.payments: Dict[str, Payment] = {}
        # RLock so store methods may call each other while holding it
        self._data_lock = threading.RLock()

    # user / auth
    def create_user(
        self,
        name: str,
        *,
        role: Role = Role.CUSTOMER,
        account_number: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if self._find_user(name) is not None:
                raise DuplicateRecord("username already exists", field="name")
            if account_number and any(
                u.account_number == account_number for u in self.users.values()
            ):
                raise DuplicateRecord("account number already registered", field="account_number")
            user = User(
                id=str(uuid.uuid4()),
                name=name,
                role=Role(role),
                account_number=account_number,
            )
            self.users[user.id] = user
            return replace(user)

    def _find_user(self, name: str) -> Optional[User]:
        lowered = name.lower()
        return next((u for u in self.users.values() if u.name.lower() == lowered), None)

    def get_user_by_name(self, name: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user(name)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            return replace(user)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReference("user not found for credentials", field="user_id")
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # payments
    def create_payment(
        self,
        owner: str,
        *,
        amount: Decimal,
        currency: str,
        provider: str,
        recipient_account: str,
        swift_code: str,
    ) -> Payment:
        with self._data_lock:
            if self._find_user(owner) is None:
                raise MissingReference("payment owner does not exist", field="owner")
            payment = Payment.new(
                owner=owner,
                amount=amount,
                currency=currency,
                provider=provider,
                recipient_account=recipient_account,
                swift_code=swift_code,
            )
            self.payments[payment.id] = payment
            return replace(payment)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._data_lock:
            payment = self.payments.get(payment_id)
            return replace(payment) if payment else None

    def list_payments(
        self,
        *,
        owner: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        limit: int = 100,
    ) -> List[Payment]:
        with self._data_lock:
            results = [
                replace(p)
                for p in self.payments.values()
                if (owner is None or p.owner == owner)
                and (status is None or p.status == status)
            ]
        return sorted(results, key=lambda p: p.created_at, reverse=True)[:limit]

    def set_payment_status(
        self, payment_id: str, status: PaymentStatus, *, processed_by: str
    ) -> Optional[Payment]:
        """Move a pending payment to ``status``.

        Returns None when the payment does not exist or was already processed.
        """
        with self._data_lock:
            payment = self.payments.get(payment_id)
            if not payment or payment.status != PaymentStatus.PENDING:
                return None
            payment.status = PaymentStatus(status)
            payment.processed_at = utcnow()
            payment.processed_by = processed_by
            self.logger.info(
                "payment_status_updated",
                payment_id=payment_id,
                status=payment.status.value,
                processed_by=processed_by,
            )
            return replace(payment)
