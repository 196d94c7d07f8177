from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from payportal.api.schemas import (
    AuthResponse,
    EmployeeLoginRequest,
    Envelope,
    IdentityResponse,
    LoginRequest,
    LogoutRequest,
    PaymentListResponse,
    PaymentRequest,
    PaymentResponse,
    PaymentStatusUpdate,
    SignupRequest,
    UserResponse,
)
from payportal.logging import get_logger
from payportal.service.client_ip import resolve_client_ip
from payportal.service.errors import NotFoundError, RateLimitedError
from payportal.service.guard import AuthContext
from payportal.service.runtime import check_rate_limit, get_runtime
from payportal.storage.models import Payment, PaymentStatus, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce rate limit and optionally apply headers to response.

    Raises:
        RateLimitedError: bucket for ``key`` is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        raise RateLimitedError(
            "too many login attempts from this address, try again later",
            retry_after=max(1, reset_seconds),
        )
    return info


def client_ip_for(request: Request) -> str:
    """Address the request came from, honouring X-Forwarded-For only from trusted proxies."""
    runtime = get_runtime()
    peer = request.client.host if request.client else None
    return resolve_client_ip(
        peer,
        request.headers.get("X-Forwarded-For"),
        runtime.settings.trusted_proxies,
    )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return runtime.guard.authenticate(authorization, client_ip_for(request))


async def get_customer_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    return get_runtime().customer_guard.check(principal)


async def get_employee_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    return get_runtime().employee_guard.check(principal)


def _payment_response(payment: Payment, *, account_number: Optional[str] = None) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        owner=payment.owner,
        amount=f"{payment.amount:.2f}",
        currency=payment.currency,
        provider=payment.provider,
        recipient_account=payment.recipient_account,
        swift_code=payment.swift_code,
        status=payment.status.value,
        created_at=payment.created_at,
        processed_at=payment.processed_at,
        processed_by=payment.processed_by,
        customer_account_number=account_number,
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Register a customer account.

    Raises:
        409: name or account number already registered
    """
    runtime = get_runtime()
    user = await runtime.auth.signup(body.name, body.password, body.account_number)
    return Envelope(
        status="ok",
        data=UserResponse(
            id=user.id, name=user.name, role=user.role.value, created_at=user.created_at
        ),
    )


async def _login(
    request: Request,
    response: Response,
    *,
    name: str,
    password: str,
    role: Role,
    account_number: Optional[str] = None,
) -> Envelope:
    runtime = get_runtime()
    client_ip = client_ip_for(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{client_ip}",
        runtime.settings.login_rate_limit_per_window,
        runtime.settings.login_rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.login(
        name,
        password,
        client_ip=client_ip,
        role=role,
        account_number=account_number,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            name=result.user.name,
            role=result.user.role.value,
            session_id=result.session_id,
            access_token=result.token,
            expires_at=result.expires_at,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Customer login with name, account number and password.

    Raises:
        401: credentials rejected
        429: identifier locked out or per-address limit reached
    """
    return await _login(
        request,
        response,
        name=body.name,
        password=body.password,
        role=Role.CUSTOMER,
        account_number=body.account_number,
    )


@router.post("/auth/employee/login", response_model=Envelope, tags=["auth"])
async def employee_login(body: EmployeeLoginRequest, request: Request, response: Response):
    return await _login(
        request,
        response,
        name=body.name,
        password=body.password,
        role=Role.EMPLOYEE,
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(principal, body.session_id if body else None)
    return Envelope(status="ok", data={"message": "logged out", "session_id": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=IdentityResponse(
            name=principal.principal,
            role=principal.role.value,
            session_id=principal.session_id,
        ),
    )


@router.post("/payments", response_model=Envelope, status_code=201, tags=["payments"])
async def create_payment(
    body: PaymentRequest, principal: AuthContext = Depends(get_customer_user)
):
    runtime = get_runtime()
    payment = runtime.store.create_payment(
        principal.principal,
        amount=body.amount,
        currency=body.currency,
        provider=body.provider,
        recipient_account=body.recipient_account,
        swift_code=body.swift_code,
    )
    logger.info(
        "payment_created",
        payment_id=payment.id,
        principal=principal.principal,
        currency=payment.currency,
    )
    return Envelope(status="ok", data=_payment_response(payment))


@router.get("/payments", response_model=Envelope, tags=["payments"])
async def list_payments(principal: AuthContext = Depends(get_customer_user)):
    runtime = get_runtime()
    payments = runtime.store.list_payments(owner=principal.principal)
    return Envelope(
        status="ok",
        data=PaymentListResponse(items=[_payment_response(p) for p in payments]),
    )


@router.get("/employee/payments", response_model=Envelope, tags=["employee"])
async def list_pending_payments(principal: AuthContext = Depends(get_employee_user)):
    """Pending payments across all customers, newest first."""
    runtime = get_runtime()
    payments = runtime.store.list_payments(status=PaymentStatus.PENDING)
    items = []
    for payment in payments:
        owner = runtime.store.get_user_by_name(payment.owner)
        items.append(
            _payment_response(payment, account_number=owner.account_number if owner else None)
        )
    return Envelope(status="ok", data=PaymentListResponse(items=items))


@router.patch("/employee/payments/{payment_id}", response_model=Envelope, tags=["employee"])
async def update_payment_status(
    body: PaymentStatusUpdate,
    payment_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_employee_user),
):
    runtime = get_runtime()
    payment = runtime.store.set_payment_status(
        payment_id, PaymentStatus(body.status), processed_by=principal.principal
    )
    if payment is None:
        raise NotFoundError("payment not found or already processed")
    return Envelope(status="ok", data=_payment_response(payment))
