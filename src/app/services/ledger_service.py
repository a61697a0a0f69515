"""
크레딧 원장 서비스
계정 잔액을 변경하는 유일한 경로 - 트랜잭션 ID 기반 멱등 지급과 결제 상태 변경
"""
import asyncio
from typing import Callable, Optional, Tuple
from datetime import datetime

from core.base_service import BaseService
from core.interfaces import IAccountStore, ILedgerService
from core.ledger_config import EXPIRED_PLAN_LABEL, TERMINAL_STATUSES, PaymentStatus
from core.ledger_models import (
    UNLIMITED,
    ZERO,
    Account,
    AccountStatusChange,
    AlreadyApplied,
    Applied,
    Balance,
    CreditGrant,
    FiniteBalance,
    GrantResult,
    TransactionRecord,
    utcnow,
)
from core.responses import TransientFailureException
from services.account_store import StoreUnavailableError, VersionConflictError

# 계정을 받아 새 상태를 반환 (None 이면 기록하지 않음)
Mutation = Callable[[Account], Optional[Account]]


class LedgerService(BaseService, ILedgerService):
    """멱등 크레딧 원장 서비스

    읽기 → 검사 → 버전 조건부 기록(compare-and-swap) 순서로 처리하며,
    버전 충돌 시 새로 읽어서 재시도합니다. 저장소 일시 오류는 백오프 후 재시도하고,
    재시도 한도를 넘으면 TransientFailureException 으로 호출자(웹훅)에 알립니다.
    """

    def __init__(
        self,
        account_store: IAccountStore,
        max_attempts: int = 5,
        backoff_factor: float = 0.1,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(account_store)
        if max_attempts < 1:
            raise ValueError("max_attempts는 1 이상이어야 합니다")
        self.max_attempts = max_attempts
        self.backoff_factor = max(0.0, float(backoff_factor))
        self.clock = clock

    async def get_account(self, account_id: str) -> Account:
        """계정 조회 (레코드가 없으면 기본 계정)"""
        stored = await self.account_store.read(account_id)
        return stored.account

    async def apply_grant(self, grant: CreditGrant) -> GrantResult:
        """트랜잭션 ID 당 정확히 한 번 크레딧 지급"""
        if not grant.account_id or not grant.transaction_id:
            raise ValueError("account_id와 transaction_id가 필요합니다")

        account, written = await self._apply(
            grant.account_id,
            lambda current: self._grant_mutation(current, grant),
            action="grant",
        )

        if not written:
            self.logger.info(
                "[LEDGER] transaction %s already applied for %s; skipping",
                grant.transaction_id,
                grant.account_id,
            )
            return AlreadyApplied(account)

        self.logger.info(
            "[LEDGER] applied %s to %s: +%s credits unlimited=%s balance=%s plan=%s",
            grant.transaction_id,
            grant.account_id,
            grant.credit_delta,
            grant.is_unlimited,
            account.credit_balance,
            account.plan_label,
        )
        await self.log_account_event(
            grant.account_id,
            "grant_applied",
            {
                "transaction_id": grant.transaction_id,
                "credit_delta": grant.credit_delta,
                "is_unlimited": grant.is_unlimited,
                "is_renewal": grant.is_renewal,
                "balance": account.credit_balance,
            },
        )
        return Applied(account)

    async def apply_status_change(self, change: AccountStatusChange) -> Applied:
        """결제 상태 변경 (멱등성 검사 없이 항상 덮어쓰기)"""
        if not change.account_id:
            raise ValueError("account_id가 필요합니다")

        account, _ = await self._apply(
            change.account_id,
            lambda current: self._status_mutation(current, change),
            action="status_change",
        )

        self.logger.info(
            "[LEDGER] status of %s set to %s (balance=%s plan=%s)",
            change.account_id,
            change.new_status.value,
            account.credit_balance,
            account.plan_label,
        )
        await self.log_account_event(
            change.account_id,
            "status_changed",
            {"status": change.new_status.value, "balance": account.credit_balance},
        )
        return Applied(account)

    def _grant_mutation(self, account: Account, grant: CreditGrant) -> Optional[Account]:
        if account.has_transaction(grant.transaction_id):
            return None

        now = self.clock()
        record = TransactionRecord(
            transaction_id=grant.transaction_id,
            credit_delta=0 if grant.is_unlimited else grant.credit_delta,
            applied_at=now,
            is_renewal=grant.is_renewal,
        )
        return account.copy(
            balance=self._next_balance(account.balance, grant),
            plan_label=grant.plan_label,
            payment_status=PaymentStatus.ACTIVE,
            transactions=[*account.transactions, record],
            subscription_id=grant.subscription_id or account.subscription_id,
            customer_id=grant.customer_id or account.customer_id,
            last_renewal_at=now,
            subscription_ended_at=None,
            updated_at=now,
        )

    @staticmethod
    def _next_balance(current: Balance, grant: CreditGrant) -> Balance:
        if grant.is_unlimited:
            return UNLIMITED
        if current.is_unlimited:
            # 무제한 → 유한 플랜 전환: 최신 지급의 플래그가 우선, 잔액은 이번 지급분부터 시작
            return FiniteBalance(grant.credit_delta)
        return current.add(grant.credit_delta)

    def _status_mutation(self, account: Account, change: AccountStatusChange) -> Account:
        now = self.clock()
        terminal = change.new_status in TERMINAL_STATUSES
        changes = {"payment_status": change.new_status, "updated_at": now}

        if change.is_unlimited:
            changes["balance"] = UNLIMITED
        elif change.balance is not None:
            changes["balance"] = change.balance
        elif terminal or (change.is_unlimited is False and account.is_unlimited):
            # 종료 상태는 잔액을 비움
            changes["balance"] = ZERO

        if change.plan_label is not None:
            changes["plan_label"] = change.plan_label
        elif terminal:
            changes["plan_label"] = EXPIRED_PLAN_LABEL
        if terminal:
            changes["subscription_ended_at"] = now

        return account.copy(**changes)

    async def _apply(self, account_id: str, mutate: Mutation, *, action: str) -> Tuple[Account, bool]:
        """조건부 기록 재시도 루프"""
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                stored = await self.account_store.read(account_id)
                updated = mutate(stored.account)
                if updated is None:
                    return stored.account, False

                await self.account_store.compare_and_swap(account_id, stored.version, updated)
                return updated, True
            except VersionConflictError as e:
                last_error = e
                self.logger.info(
                    "[LEDGER] %s conflict for %s (attempt %s/%s); re-reading",
                    action,
                    account_id,
                    attempt,
                    self.max_attempts,
                )
                await asyncio.sleep(0)
            except StoreUnavailableError as e:
                last_error = e
                self.logger.warning(
                    "[LEDGER] %s store unavailable for %s (attempt %s/%s): %s",
                    action,
                    account_id,
                    attempt,
                    self.max_attempts,
                    e,
                )
                if attempt < self.max_attempts:
                    await self._sleep_backoff(attempt)

        self.logger.error(
            "[LEDGER] %s for %s gave up after %s attempts: %s",
            action,
            account_id,
            self.max_attempts,
            last_error,
        )
        raise TransientFailureException(
            f"계정 {account_id} 원장 기록에 실패했습니다. 잠시 후 다시 시도하세요.",
            cause=last_error,
        )

    async def _sleep_backoff(self, attempt: int) -> None:
        delay = self.backoff_factor * (2 ** (attempt - 1))
        if delay > 0:
            await asyncio.sleep(delay)
