from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    CUSTOMER = "customer"
    EMPLOYEE = "employee"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class User:
    id: str
    name: str
    role: Role = Role.CUSTOMER
    account_number: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class Payment:
    id: str
    owner: str
    amount: Decimal
    currency: str
    provider: str
    recipient_account: str
    swift_code: str
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        owner: str,
        amount: Decimal,
        currency: str,
        provider: str,
        recipient_account: str,
        swift_code: str,
    ) -> "Payment":
        return cls(
            id=str(uuid.uuid4()),
            owner=owner,
            amount=amount,
            currency=currency,
            provider=provider,
            recipient_account=recipient_account,
            swift_code=swift_code,
        )
