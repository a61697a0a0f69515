"""
크레딧 원장 도메인 모델

잔액은 Finite/Unlimited 로 구분된 값 타입으로 다루고,
저장소 문서(dict)와의 변환은 Account.to_document / Account.from_document 가 담당합니다.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from core.ledger_config import (
    DEFAULT_PLAN_LABEL,
    METADATA_CREDITS_KEY,
    METADATA_PLAN_KEY,
    METADATA_UNLIMITED_KEY,
    UNLIMITED_FLAG_VALUE,
    UNLIMITED_SENTINEL,
    PaymentStatus,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _to_int(value: Any, default: Optional[int] = 0) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        try:
            return int(float(str(value).strip()))
        except (TypeError, ValueError, OverflowError):
            return default


@dataclass(frozen=True)
class FiniteBalance:
    """유한 크레딧 잔액"""
    credits: int = 0

    is_unlimited = False

    def __post_init__(self) -> None:
        if self.credits < 0:
            raise ValueError(f"잔액은 음수가 될 수 없습니다: {self.credits}")

    def add(self, delta: int) -> "FiniteBalance":
        return FiniteBalance(self.credits + delta)

    def to_number(self) -> int:
        return self.credits


@dataclass(frozen=True)
class UnlimitedBalance:
    """무제한 잔액"""

    is_unlimited = True

    def to_number(self) -> int:
        return UNLIMITED_SENTINEL


Balance = Union[FiniteBalance, UnlimitedBalance]

UNLIMITED = UnlimitedBalance()
ZERO = FiniteBalance(0)


def balance_from_number(value: Any, is_unlimited: bool = False) -> Balance:
    """저장된 숫자 필드를 Balance 로 복원 (무제한 여부는 isUnlimited 플래그로만 판단)"""
    if is_unlimited:
        return UNLIMITED
    return FiniteBalance(max(0, _to_int(value)))


@dataclass(frozen=True)
class TransactionRecord:
    """적용된 크레딧 지급 기록 (불변)"""
    transaction_id: str
    credit_delta: int
    applied_at: datetime
    is_renewal: bool = False
    status: str = "completed"

    def to_document(self) -> Dict[str, Any]:
        return {
            "invoiceId": self.transaction_id,
            "credits": self.credit_delta,
            "isRenewal": self.is_renewal,
            "date": _isoformat(self.applied_at),
            "status": self.status,
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "TransactionRecord":
        return cls(
            transaction_id=str(data.get("invoiceId") or data.get("transaction_id") or ""),
            credit_delta=_to_int(data.get("credits")),
            applied_at=_parse_datetime(data.get("date")) or datetime.fromtimestamp(0, tz=timezone.utc),
            is_renewal=bool(data.get("isRenewal", False)),
            status=str(data.get("status") or "completed"),
        )


@dataclass
class Account:
    """크레딧이 지급되는 계정"""
    account_id: str
    balance: Balance = ZERO
    plan_label: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.ACTIVE
    transactions: List[TransactionRecord] = field(default_factory=list)
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    last_renewal_at: Optional[datetime] = None
    subscription_ended_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def empty(cls, account_id: str) -> "Account":
        """레코드가 없는 계정의 기본 상태 (잔액 0, 이력 없음)"""
        return cls(account_id=account_id)

    @property
    def is_unlimited(self) -> bool:
        return self.balance.is_unlimited

    @property
    def credit_balance(self) -> int:
        return self.balance.to_number()

    def has_transaction(self, transaction_id: str) -> bool:
        return any(record.transaction_id == transaction_id for record in self.transactions)

    def copy(self, **changes: Any) -> "Account":
        changes.setdefault("transactions", list(self.transactions))
        return replace(self, **changes)

    def to_document(self) -> Dict[str, Any]:
        """저장소 문서 형태로 직렬화"""
        return {
            "credits": self.balance.to_number(),
            "isUnlimited": self.balance.is_unlimited,
            "plan": self.plan_label,
            "lastPaymentStatus": self.payment_status.value,
            "payments": [record.to_document() for record in self.transactions],
            "subscriptionId": self.subscription_id,
            "stripeCustomerId": self.customer_id,
            "lastRenewalDate": _isoformat(self.last_renewal_at),
            "subscriptionEndDate": _isoformat(self.subscription_ended_at),
            "updatedAt": _isoformat(self.updated_at),
        }

    @classmethod
    def from_document(cls, account_id: str, data: Optional[Dict[str, Any]]) -> "Account":
        if not data:
            return cls.empty(account_id)

        payments = data.get("payments") or []
        transactions = [
            TransactionRecord.from_document(item)
            for item in payments
            if isinstance(item, dict)
        ]
        return cls(
            account_id=account_id,
            balance=balance_from_number(data.get("credits"), bool(data.get("isUnlimited"))),
            plan_label=data.get("plan"),
            payment_status=PaymentStatus.parse(data.get("lastPaymentStatus")),
            transactions=transactions,
            subscription_id=data.get("subscriptionId"),
            customer_id=data.get("stripeCustomerId"),
            last_renewal_at=_parse_datetime(data.get("lastRenewalDate")),
            subscription_ended_at=_parse_datetime(data.get("subscriptionEndDate")),
            updated_at=_parse_datetime(data.get("updatedAt")),
        )


@dataclass(frozen=True)
class StoredAccount:
    """저장소에서 읽은 계정과 버전 토큰 (레코드가 없으면 version=None)"""
    account: Account
    version: Any = None

    @property
    def exists(self) -> bool:
        return self.version is not None


@dataclass(frozen=True)
class ProductMetadata:
    """상품 메타데이터 파싱 결과"""
    credit_delta: int = 0
    is_unlimited: bool = False
    plan_label: str = DEFAULT_PLAN_LABEL

    @classmethod
    def from_product(cls, product: Optional[Dict[str, Any]]) -> "ProductMetadata":
        """상품 메타데이터를 파싱 (누락/잘못된 값은 기본값으로 대체)"""
        if not isinstance(product, dict):
            logger.warning("[LEDGER] product detail missing; using default metadata")
            return cls()

        metadata = product.get("metadata") or {}
        if not isinstance(metadata, dict):
            metadata = {}

        raw_credits = metadata.get(METADATA_CREDITS_KEY)
        credit_delta = 0
        if raw_credits not in (None, ""):
            parsed = _to_int(raw_credits, default=None)
            if parsed is None or parsed < 0:
                logger.warning(
                    "[LEDGER] malformed credits metadata %r on product %s; defaulting to 0",
                    raw_credits,
                    product.get("id"),
                )
            else:
                credit_delta = parsed

        plan_label = metadata.get(METADATA_PLAN_KEY) or product.get("name") or DEFAULT_PLAN_LABEL

        return cls(
            credit_delta=credit_delta,
            is_unlimited=metadata.get(METADATA_UNLIMITED_KEY) == UNLIMITED_FLAG_VALUE,
            plan_label=str(plan_label),
        )


@dataclass(frozen=True)
class CreditGrant:
    """단일 트랜잭션의 크레딧 지급"""
    account_id: str
    transaction_id: str
    credit_delta: int
    is_unlimited: bool = False
    plan_label: str = DEFAULT_PLAN_LABEL
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    is_renewal: bool = False


@dataclass(frozen=True)
class AccountStatusChange:
    """결제 상태 변경 (None 필드는 변경하지 않음)"""
    account_id: str
    new_status: PaymentStatus
    balance: Optional[Balance] = None
    is_unlimited: Optional[bool] = None
    plan_label: Optional[str] = None


@dataclass(frozen=True)
class Ignored:
    """처리 대상이 아닌 이벤트"""
    reason: str


@dataclass(frozen=True)
class Applied:
    account: Account

    @property
    def balance(self) -> Balance:
        return self.account.balance


@dataclass(frozen=True)
class AlreadyApplied:
    account: Account

    @property
    def balance(self) -> Balance:
        return self.account.balance


NormalizedEvent = Union[CreditGrant, AccountStatusChange, Ignored]
GrantResult = Union[Applied, AlreadyApplied]
