from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

# Whitelist patterns for every field that crosses the API boundary
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,20}$")
PASSWORD_PATTERN = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,100}$"
)
ACCOUNT_NUMBER_PATTERN = re.compile(r"^[0-9]{8,17}$")
AMOUNT_PATTERN = re.compile(r"^\d{1,10}(\.\d{1,2})?$")
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
PROVIDER_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-]{3,50}$")
RECIPIENT_ACCOUNT_PATTERN = re.compile(r"^[0-9]{6,34}$")
SWIFT_PATTERN = re.compile(r"^[A-Z0-9]{8}([A-Z0-9]{3})?$")


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_text(value: str) -> str:
    """NFKC-normalize and strip zero-width characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned).strip()


def _validate_username(value: str) -> str:
    normalized = _normalize_text(value)
    if not USERNAME_PATTERN.match(normalized):
        raise ValueError("username must be 3-20 letters, digits or underscores")
    return normalized


def _validate_account_number(value: str) -> str:
    normalized = _normalize_text(value)
    if not ACCOUNT_NUMBER_PATTERN.match(normalized):
        raise ValueError("account number must be 8-17 digits")
    return normalized


class SignupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., max_length=64)
    account_number: str = Field(..., max_length=32)
    password: str = Field(..., max_length=128)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("account_number")
    @classmethod
    def _validate_account(cls, value: str) -> str:
        return _validate_account_number(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        if not PASSWORD_PATTERN.match(value):
            raise ValueError(
                "password must be 8-100 characters with upper and lower case letters, "
                "a digit and one of @$!%*?&"
            )
        return value


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., max_length=64)
    account_number: str = Field(..., max_length=32)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("account_number")
    @classmethod
    def _validate_account(cls, value: str) -> str:
        return _validate_account_number(value)


class EmployeeLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., max_length=64)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_username(value)


class LogoutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: Optional[str] = Field(default=None, max_length=128)


class UserResponse(BaseModel):
    id: str
    name: str
    role: str
    created_at: datetime


class AuthResponse(BaseModel):
    name: str
    role: str
    session_id: str
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class IdentityResponse(BaseModel):
    name: str
    role: str
    session_id: str


class PaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Decimal
    currency: str
    provider: str
    recipient_account: str
    swift_code: str

    @field_validator("amount", mode="before")
    @classmethod
    def _validate_amount(cls, value: Any) -> Decimal:
        # Reject floats so binary rounding never reaches the ledger
        if isinstance(value, (bool, float)):
            raise ValueError("amount must be given as a string or integer")
        text = str(value).strip()
        if not AMOUNT_PATTERN.match(text):
            raise ValueError("amount must be a positive number with up to two decimal places")
        try:
            amount = Decimal(text)
        except InvalidOperation as exc:
            raise ValueError("amount is not a number") from exc
        if amount <= 0:
            raise ValueError("amount must be greater than zero")
        return amount.quantize(Decimal("0.01"))

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, value: str) -> str:
        if not CURRENCY_PATTERN.match(value):
            raise ValueError("currency must be a 3-letter uppercase code")
        return value

    @field_validator("provider")
    @classmethod
    def _validate_provider(cls, value: str) -> str:
        if not PROVIDER_PATTERN.match(value):
            raise ValueError("provider must be 3-50 letters, digits, spaces or hyphens")
        return value.strip()

    @field_validator("recipient_account")
    @classmethod
    def _validate_recipient(cls, value: str) -> str:
        if not RECIPIENT_ACCOUNT_PATTERN.match(value):
            raise ValueError("recipient account must be 6-34 digits")
        return value

    @field_validator("swift_code")
    @classmethod
    def _validate_swift(cls, value: str) -> str:
        if not SWIFT_PATTERN.match(value):
            raise ValueError("SWIFT code must be 8 or 11 uppercase letters or digits")
        return value


class PaymentStatusUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["approved", "rejected"]


class PaymentResponse(BaseModel):
    id: str
    owner: str
    amount: str
    currency: str
    provider: str
    recipient_account: str
    swift_code: str
    status: str
    created_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    customer_account_number: Optional[str] = None


class PaymentListResponse(BaseModel):
    items: List[PaymentResponse]
