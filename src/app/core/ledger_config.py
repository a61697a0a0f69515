"""
크레딧 원장 설정 및 상수 관리
"""
from enum import Enum

# 단일 숫자 필드만 저장 가능한 저장소에서 무제한 잔액을 표현하는 값
UNLIMITED_SENTINEL = 999999

# 해지 시 plan 라벨
EXPIRED_PLAN_LABEL = "expired"
DEFAULT_PLAN_LABEL = "unknown"


class PaymentStatus(str, Enum):
    """계정 결제 상태"""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @classmethod
    def parse(cls, value, default: "PaymentStatus" = None) -> "PaymentStatus":
        """저장소 문자열을 상태로 변환 (알 수 없는 값은 기본값)"""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default or cls.ACTIVE


# 잔액을 초기화하는 종료 상태
TERMINAL_STATUSES = {PaymentStatus.CANCELED, PaymentStatus.EXPIRED}


class StripeEventType:
    """처리 대상 Stripe 이벤트 타입"""
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


# 첫 결제 인보이스는 checkout.session.completed 에서 처리
FIRST_INVOICE_BILLING_REASON = "subscription_create"
RENEWAL_BILLING_REASONS = {"subscription_cycle"}

# 상품/구독 메타데이터 키
METADATA_ACCOUNT_KEY = "uid"
METADATA_CREDITS_KEY = "credits"
METADATA_UNLIMITED_KEY = "isUnlimited"
METADATA_PLAN_KEY = "planName"
UNLIMITED_FLAG_VALUE = "true"

CHECKOUT_PRODUCT_EXPAND = ["line_items.data.price.product"]
