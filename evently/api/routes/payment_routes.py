import json
import logging

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from evently.api.dependencies import get_payment_service, require
from evently.api.schemas.schemas import (
    OrderStatusResponse,
    PaymentFailRequest,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentResponse,
    RazorpayVerifyRequest,
    WebhookRequest,
    WebhookResponse,
)
from evently.application.payment_service import PaymentService
from evently.domain.auth import Capability, Principal
from evently.domain.exceptions import ValidationError
from evently.infrastructure.db.models import Payment

router = APIRouter(prefix="/payments", tags=["payments"])
logger = logging.getLogger(__name__)

WEBHOOK_SIGNATURE_HEADER = "X-Razorpay-Signature"


def _to_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        payment_id=payment.id,
        booking_id=payment.booking_id,
        user_id=payment.user_id,
        event_id=payment.event_id,
        amount=payment.amount,
        currency=payment.currency,
        method=payment.method.value,
        status=payment.status.value,
        order_id=payment.order_id,
        gateway_payment_id=payment.gateway_payment_id,
        failure_reason=payment.failure_reason,
        created_at=payment.created_at,
        settled_at=payment.settled_at,
    )


@router.post("", response_model=PaymentInitiateResponse)
def initiate_payment(
    request: PaymentInitiateRequest,
    principal: Principal = Depends(require(Capability.INITIATE_PAYMENT)),
    service: PaymentService = Depends(get_payment_service),
):
    user_id = request.user_id or principal.user_id
    principal.require_owner(user_id)

    payment = service.initiate(
        user_id=user_id,
        booking_id=request.booking_id,
        event_id=request.event_id,
        amount=request.amount,
        currency=request.currency,
        method=request.method,
    )
    return PaymentInitiateResponse(
        payment_id=payment.id,
        booking_id=payment.booking_id,
        status=payment.status.value,
        order_id=payment.order_id,
        amount=payment.amount,
        currency=payment.currency,
        key_id=service.gateway_key_id,
    )


@router.post("/verify", response_model=PaymentResponse)
def verify_payment(
    request: RazorpayVerifyRequest,
    principal: Principal = Depends(require(Capability.VERIFY_PAYMENT)),
    service: PaymentService = Depends(get_payment_service),
):
    principal.require_owner(service.get_by_order(request.razorpay_order_id).user_id)
    payment = service.verify_and_settle(
        order_id=request.razorpay_order_id,
        gateway_payment_id=request.razorpay_payment_id,
        signature=request.razorpay_signature,
    )
    return _to_response(payment)


@router.post("/webhook", response_model=WebhookResponse)
async def payment_webhook(request: Request):
    """Called by the gateway, not by users; trust comes from signatures, not tokens."""
    raw_body = await request.body()
    service: PaymentService = request.app.state.container.payments

    try:
        body = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError("Webhook body is not valid UTF-8") from exc

    await run_in_threadpool(
        service.verify_webhook_signature,
        body,
        request.headers.get(WEBHOOK_SIGNATURE_HEADER),
    )
    try:
        webhook = WebhookRequest.model_validate(json.loads(body or "{}"))
    except ValueError as exc:
        raise ValidationError("Malformed webhook body") from exc

    payment = await run_in_threadpool(service.handle_webhook, webhook.event, webhook.payload)
    if payment is None:
        return WebhookResponse(status="ignored")
    return WebhookResponse(
        status="processed",
        payment_id=payment.id,
        payment_status=payment.status.value,
    )


@router.get("", response_model=list[PaymentResponse])
def list_payments(
    user_id: str | None = None,
    limit: int = 50,
    principal: Principal = Depends(require(Capability.VIEW_PAYMENT)),
    service: PaymentService = Depends(get_payment_service),
):
    user_id = user_id or principal.user_id
    principal.require_owner(user_id)
    safe_limit = max(1, min(limit, 200))
    return [_to_response(p) for p in service.list_for_user(user_id, limit=safe_limit)]


@router.get("/booking/{booking_id}", response_model=PaymentResponse)
def get_payment_for_booking(
    booking_id: str,
    principal: Principal = Depends(require(Capability.VIEW_PAYMENT)),
    service: PaymentService = Depends(get_payment_service),
):
    payment = service.get_by_booking(booking_id)
    principal.require_owner(payment.user_id)
    return _to_response(payment)


@router.get("/orders/{order_id}/status", response_model=OrderStatusResponse)
def get_order_status(
    order_id: str,
    principal: Principal = Depends(require(Capability.VIEW_PAYMENT)),
    service: PaymentService = Depends(get_payment_service),
):
    principal.require_owner(service.get_by_order(order_id).user_id)
    return OrderStatusResponse(order_id=order_id, status=service.fetch_order_status(order_id))


@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: str,
    principal: Principal = Depends(require(Capability.VIEW_PAYMENT)),
    service: PaymentService = Depends(get_payment_service),
):
    payment = service.get(payment_id)
    principal.require_owner(payment.user_id)
    return _to_response(payment)


@router.post("/{order_id}/failed", response_model=PaymentResponse)
def fail_payment(
    order_id: str,
    request: PaymentFailRequest,
    principal: Principal = Depends(require(Capability.FAIL_PAYMENT)),
    service: PaymentService = Depends(get_payment_service),
):
    return _to_response(service.fail(order_id, request.reason))


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
def refund_payment(
    payment_id: str,
    principal: Principal = Depends(require(Capability.REFUND_PAYMENT)),
    service: PaymentService = Depends(get_payment_service),
):
    return _to_response(service.refund(payment_id))
