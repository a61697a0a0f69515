"""
Stripe Webhook Router

Handles Stripe webhook events and the thin checkout/account endpoints:
- signature verification via the Stripe SDK (400 on mismatch, never retried)
- event normalization into credit grants / account status changes
- idempotent ledger updates keyed on the invoice or checkout-session id
- 500 on transient failures so Stripe redelivers the event
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from core.factory import ServiceFactory
from core.interfaces import IEventNormalizer, ILedgerService, IPaymentProviderClient
from core.ledger_models import (
    AccountStatusChange,
    AlreadyApplied,
    CreditGrant,
    Ignored,
)
from core.responses import TransientFailureException, log_operation, success_response
from schemas import CheckoutSessionRequest, CheckoutSessionResponse, DeleteUserDataRequest, WebhookAck
from services.account_service import AccountService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks", "stripe"])


def get_provider_client() -> Optional[IPaymentProviderClient]:
    return ServiceFactory.get_provider_client()


def get_event_normalizer() -> Optional[IEventNormalizer]:
    return ServiceFactory.get_event_normalizer()


def get_ledger_service() -> ILedgerService:
    return ServiceFactory.get_ledger_service()


def get_account_service() -> AccountService:
    return ServiceFactory.get_account_service()


async def process_stripe_event(
    event: Dict[str, Any],
    normalizer: IEventNormalizer,
    ledger: ILedgerService,
) -> Dict[str, Any]:
    """검증된 Stripe 이벤트를 정규화하고 원장에 반영한 결과를 반환"""

    event_type = event.get("type") or ""
    event_id = event.get("id")
    logger.info("[STRIPE] event=%s id=%s", event_type, event_id)

    normalized = await normalizer.normalize(event)

    if isinstance(normalized, Ignored):
        logger.info("[STRIPE] event %s ignored: %s", event_id, normalized.reason)
        return {
            "event_id": event_id,
            "event_type": event_type,
            "category": None,
            "status": "skipped",
            "reason": normalized.reason,
        }

    if isinstance(normalized, CreditGrant):
        result = await ledger.apply_grant(normalized)
        duplicate = isinstance(result, AlreadyApplied)
        return {
            "event_id": event_id,
            "event_type": event_type,
            "category": "grant",
            "status": "duplicate" if duplicate else "applied",
            "account_id": normalized.account_id,
            "transaction_id": normalized.transaction_id,
            "balance": result.account.credit_balance,
            "is_unlimited": result.account.is_unlimited,
        }

    if isinstance(normalized, AccountStatusChange):
        result = await ledger.apply_status_change(normalized)
        return {
            "event_id": event_id,
            "event_type": event_type,
            "category": "status_change",
            "status": "applied",
            "account_id": normalized.account_id,
            "payment_status": normalized.new_status.value,
            "balance": result.account.credit_balance,
        }

    raise TypeError(f"unexpected normalized event: {normalized!r}")


@router.get("/webhook")
async def stripe_webhook_get():
    return success_response(data={"ok": True}, message="stripe webhook alive")


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    provider: Optional[IPaymentProviderClient] = Depends(get_provider_client),
    normalizer: Optional[IEventNormalizer] = Depends(get_event_normalizer),
    ledger: ILedgerService = Depends(get_ledger_service),
):
    raw = await request.body()
    logger.info(
        "[STRIPE] webhook received: len=%s, has_signature=%s",
        len(raw),
        bool(stripe_signature),
    )

    if provider is None or normalizer is None:
        # 설정이 복구되면 Stripe 재전송으로 처리되도록 5xx 응답
        raise TransientFailureException("Stripe 클라이언트가 설정되지 않았습니다")

    event = provider.verify_signature(raw, stripe_signature)
    outcome = await process_stripe_event(event, normalizer, ledger)
    log_operation("stripe_webhook", outcome.get("account_id"), outcome)

    return WebhookAck(received=True)


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    body: CheckoutSessionRequest,
    service: AccountService = Depends(get_account_service),
):
    logger.info("[STRIPE] checkout request: uid=%s price=%s", body.uid, body.price_id)
    session = await service.create_checkout_session(body.uid, body.email, body.price_id)
    return CheckoutSessionResponse(url=session.get("url"))


@router.post("/delete-user-data")
async def delete_user_data(
    body: DeleteUserDataRequest,
    service: AccountService = Depends(get_account_service),
):
    await service.delete_account_data(body.uid)
    return {"success": True}
