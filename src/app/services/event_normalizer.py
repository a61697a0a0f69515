"""
Stripe 웹훅 이벤트 정규화
공급자 이벤트를 CreditGrant / AccountStatusChange / Ignored 로 변환합니다.
"""
import logging
from typing import Any, Dict, Optional

from core.interfaces import IEventNormalizer, IPaymentProviderClient
from core.ledger_config import (
    CHECKOUT_PRODUCT_EXPAND,
    EXPIRED_PLAN_LABEL,
    FIRST_INVOICE_BILLING_REASON,
    METADATA_ACCOUNT_KEY,
    RENEWAL_BILLING_REASONS,
    PaymentStatus,
    StripeEventType,
)
from core.ledger_models import (
    ZERO,
    AccountStatusChange,
    CreditGrant,
    Ignored,
    NormalizedEvent,
    ProductMetadata,
)
from core.responses import TransientFailureException
from services.stripe_billing_client import StripeAPIError

logger = logging.getLogger(__name__)


def _get(d: Any, *keys: Any, default=None):
    cur = d
    for k in keys:
        if isinstance(cur, dict) and k in cur:
            cur = cur[k]
        elif isinstance(cur, list) and isinstance(k, int) and -len(cur) <= k < len(cur):
            cur = cur[k]
        else:
            return default
    return cur


def _object_id(value: Any) -> Optional[str]:
    """확장된 객체 또는 ID 문자열에서 ID 추출"""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class EventNormalizer(IEventNormalizer):
    """Stripe 이벤트 정규화기"""

    def __init__(self, provider_client: IPaymentProviderClient):
        self.provider_client = provider_client

    async def normalize(self, event: Dict[str, Any]) -> NormalizedEvent:
        event_type = (event.get("type") or "").strip()
        data = _get(event, "data", "object", default={}) or {}

        if event_type == StripeEventType.CHECKOUT_COMPLETED:
            return await self._normalize_checkout(data)
        if event_type == StripeEventType.INVOICE_PAID:
            return await self._normalize_invoice_paid(data)
        if event_type == StripeEventType.INVOICE_PAYMENT_FAILED:
            return await self._normalize_payment_failed(data)
        if event_type == StripeEventType.SUBSCRIPTION_DELETED:
            return self._normalize_subscription_deleted(data)

        return Ignored(f"unhandled event type: {event_type or '-'}")

    async def _normalize_checkout(self, session: Dict[str, Any]) -> NormalizedEvent:
        account_id = session.get("client_reference_id")
        if not account_id:
            logger.warning("[STRIPE] checkout session %s has no client_reference_id", session.get("id"))
            return Ignored("missing client_reference_id")

        session_id = session.get("id")
        if not session_id:
            return Ignored("checkout session without id")

        detail = await self._lookup(
            "checkout session",
            session_id,
            self.provider_client.retrieve_checkout_session(session_id, expand=CHECKOUT_PRODUCT_EXPAND),
        )
        product = _get(detail, "line_items", "data", 0, "price", "product")
        metadata = await self._product_metadata(product)

        # 인보이스가 동기적으로 생성되지 않는 checkout 흐름은 세션 ID 로 대체
        transaction_id = _object_id(session.get("invoice")) or _object_id(detail.get("invoice")) or session_id

        logger.info(
            "[STRIPE] first purchase: account=%s credits=%s unlimited=%s plan=%s tx=%s",
            account_id,
            metadata.credit_delta,
            metadata.is_unlimited,
            metadata.plan_label,
            transaction_id,
        )
        return CreditGrant(
            account_id=account_id,
            transaction_id=transaction_id,
            credit_delta=metadata.credit_delta,
            is_unlimited=metadata.is_unlimited,
            plan_label=metadata.plan_label,
            subscription_id=_object_id(session.get("subscription")),
            customer_id=_object_id(session.get("customer")),
            is_renewal=False,
        )

    async def _normalize_invoice_paid(self, invoice: Dict[str, Any]) -> NormalizedEvent:
        billing_reason = invoice.get("billing_reason")
        if billing_reason == FIRST_INVOICE_BILLING_REASON:
            # 첫 인보이스는 checkout.session.completed 에서 지급
            return Ignored("first invoice handled by checkout.session.completed")
        if billing_reason not in RENEWAL_BILLING_REASONS:
            logger.info("[STRIPE] invoice %s with billing_reason %r ignored", invoice.get("id"), billing_reason)
            return Ignored(f"billing_reason {billing_reason!r} not a renewal")

        if not invoice.get("id"):
            return Ignored("invoice without id")

        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            logger.warning("[STRIPE] invoice %s has no subscription", invoice.get("id"))
            return Ignored("invoice without subscription")

        account_id = await self._subscription_account(subscription_id)
        if not account_id:
            return Ignored("subscription metadata has no account reference")

        product_ref = (
            _get(invoice, "lines", "data", 0, "price", "product")
            or _get(invoice, "lines", "data", 0, "pricing", "price_details", "product")
        )
        metadata = await self._product_metadata(product_ref)

        logger.info(
            "[STRIPE] renewal: account=%s invoice=%s credits=%s plan=%s",
            account_id,
            invoice.get("id"),
            metadata.credit_delta,
            metadata.plan_label,
        )
        return CreditGrant(
            account_id=account_id,
            transaction_id=invoice.get("id"),
            credit_delta=metadata.credit_delta,
            is_unlimited=metadata.is_unlimited,
            plan_label=metadata.plan_label,
            subscription_id=subscription_id,
            customer_id=_object_id(invoice.get("customer")),
            is_renewal=True,
        )

    async def _normalize_payment_failed(self, invoice: Dict[str, Any]) -> NormalizedEvent:
        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            return Ignored("invoice without subscription")

        account_id = await self._subscription_account(subscription_id)
        if not account_id:
            return Ignored("subscription metadata has no account reference")

        logger.warning("[STRIPE] payment failed for account %s (invoice %s)", account_id, invoice.get("id"))
        return AccountStatusChange(account_id=account_id, new_status=PaymentStatus.PAST_DUE)

    def _normalize_subscription_deleted(self, subscription: Dict[str, Any]) -> NormalizedEvent:
        account_id = _get(subscription, "metadata", METADATA_ACCOUNT_KEY)
        if not account_id:
            logger.warning("[STRIPE] deleted subscription %s has no account reference", subscription.get("id"))
            return Ignored("subscription metadata has no account reference")

        logger.info("[STRIPE] subscription canceled for account %s", account_id)
        return AccountStatusChange(
            account_id=account_id,
            new_status=PaymentStatus.CANCELED,
            balance=ZERO,
            is_unlimited=False,
            plan_label=EXPIRED_PLAN_LABEL,
        )

    @staticmethod
    def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
        return _object_id(
            invoice.get("subscription")
            or _get(invoice, "parent", "subscription_details", "subscription")
        )

    async def _subscription_account(self, subscription_id: str) -> Optional[str]:
        subscription = await self._lookup(
            "subscription",
            subscription_id,
            self.provider_client.retrieve_subscription(subscription_id),
        )
        account_id = _get(subscription, "metadata", METADATA_ACCOUNT_KEY)
        if not account_id:
            logger.warning(
                "[STRIPE] subscription %s metadata has no uid: %s",
                subscription_id,
                _get(subscription, "metadata"),
            )
        return account_id

    async def _product_metadata(self, product: Any) -> ProductMetadata:
        """확장된 상품 객체 또는 상품 ID 로부터 메타데이터 파싱"""
        if isinstance(product, dict):
            return ProductMetadata.from_product(product)
        if isinstance(product, str) and product:
            detail = await self._lookup("product", product, self.provider_client.retrieve_product(product))
            return ProductMetadata.from_product(detail)
        return ProductMetadata.from_product(None)

    @staticmethod
    async def _lookup(kind: str, identifier: Optional[str], request) -> Dict[str, Any]:
        """보조 조회 실패는 재시도 가능한 오류로 보고"""
        try:
            return await request
        except StripeAPIError as e:
            logger.error(
                "[STRIPE] %s lookup failed: id=%s status=%s code=%s",
                kind,
                identifier,
                e.status_code,
                e.code,
            )
            raise TransientFailureException(f"Stripe {kind} 조회에 실패했습니다", cause=e) from e
