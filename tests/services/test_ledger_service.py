"""LedgerService 멱등 지급/상태 변경 테스트"""
import asyncio

import pytest

from core.ledger_config import UNLIMITED_SENTINEL, PaymentStatus
from core.ledger_models import (
    ZERO,
    AccountStatusChange,
    AlreadyApplied,
    Applied,
    CreditGrant,
    FiniteBalance,
    UnlimitedBalance,
)
from core.responses import TransientFailureException
from services.account_store import (
    AccountStoreError,
    InMemoryAccountStore,
    StoreUnavailableError,
    VersionConflictError,
)
from services.ledger_service import LedgerService


def _grant(transaction_id, credits=20, unlimited=False, account_id="u1", plan="Basic", renewal=False):
    return CreditGrant(
        account_id=account_id,
        transaction_id=transaction_id,
        credit_delta=credits,
        is_unlimited=unlimited,
        plan_label=plan,
        subscription_id="sub_1",
        customer_id="cus_1",
        is_renewal=renewal,
    )


class FlakyStore(InMemoryAccountStore):
    """지정된 횟수만큼 쓰기 충돌/일시 오류를 일으키는 저장소"""

    def __init__(self, conflicts=0, unavailable=0, fatal=False):
        super().__init__()
        self.conflicts = conflicts
        self.unavailable = unavailable
        self.fatal = fatal
        self.cas_calls = 0

    async def compare_and_swap(self, account_id, expected_version, account):
        self.cas_calls += 1
        if self.fatal:
            raise AccountStoreError("permission denied", account_id)
        if self.unavailable > 0:
            self.unavailable -= 1
            raise StoreUnavailableError("timeout", account_id)
        if self.conflicts > 0:
            self.conflicts -= 1
            raise VersionConflictError(account_id, expected_version, "other")
        return await super().compare_and_swap(account_id, expected_version, account)


class FailingLogStore(InMemoryAccountStore):
    async def log_system_event(self, event_type, event_data, account_id=None):
        raise RuntimeError("logs table missing")


@pytest.fixture
def store():
    return InMemoryAccountStore()


@pytest.fixture
def ledger(store):
    return LedgerService(store, max_attempts=5, backoff_factor=0)


@pytest.mark.asyncio
async def test_subscription_lifecycle(ledger, store):
    """첫 구매 → 재전송 → 갱신 → 무제한 업그레이드 → 해지"""

    first = await ledger.apply_grant(_grant("inv_1", 20))
    assert isinstance(first, Applied)
    assert first.account.credit_balance == 20
    assert first.account.plan_label == "Basic"
    assert first.account.payment_status == PaymentStatus.ACTIVE

    replay = await ledger.apply_grant(_grant("inv_1", 20))
    assert isinstance(replay, AlreadyApplied)
    assert replay.account.credit_balance == 20

    renewal = await ledger.apply_grant(_grant("inv_2", 20, renewal=True))
    assert renewal.account.credit_balance == 40

    upgrade = await ledger.apply_grant(_grant("inv_3", 0, unlimited=True, plan="Unlimited"))
    assert upgrade.account.is_unlimited
    assert upgrade.account.credit_balance == UNLIMITED_SENTINEL
    assert store.document("u1")["credits"] == 999999
    assert store.document("u1")["isUnlimited"] is True

    canceled = await ledger.apply_status_change(
        AccountStatusChange(
            account_id="u1",
            new_status=PaymentStatus.CANCELED,
            balance=ZERO,
            is_unlimited=False,
            plan_label="expired",
        )
    )
    account = canceled.account
    assert account.balance == FiniteBalance(0)
    assert account.payment_status == PaymentStatus.CANCELED
    assert account.plan_label == "expired"
    assert account.subscription_ended_at is not None
    assert [t.transaction_id for t in account.transactions] == ["inv_1", "inv_2", "inv_3"]
    assert [t.credit_delta for t in account.transactions] == [20, 20, 0]


@pytest.mark.asyncio
async def test_replay_does_not_write(ledger, store):
    await ledger.apply_grant(_grant("inv_1", 20))
    writes = store.write_count

    result = await ledger.apply_grant(_grant("inv_1", 20))

    assert isinstance(result, AlreadyApplied)
    assert store.write_count == writes
    assert len(store.document("u1")["payments"]) == 1


@pytest.mark.asyncio
async def test_distinct_finite_grants_commute():
    left = LedgerService(InMemoryAccountStore(), backoff_factor=0)
    right = LedgerService(InMemoryAccountStore(), backoff_factor=0)

    await left.apply_grant(_grant("a", 15))
    await left.apply_grant(_grant("b", 7))
    await right.apply_grant(_grant("b", 7))
    await right.apply_grant(_grant("a", 15))

    assert (await left.get_account("u1")).balance == (await right.get_account("u1")).balance == FiniteBalance(22)


@pytest.mark.asyncio
async def test_latest_grant_flag_wins_in_both_directions(ledger):
    await ledger.apply_grant(_grant("inv_u", 0, unlimited=True))
    after = await ledger.apply_grant(_grant("inv_f", 50))

    # 최신 지급의 플래그가 우선: 유한 지급은 해당 금액부터 다시 시작
    assert after.account.balance == FiniteBalance(50)

    again = await ledger.apply_grant(_grant("inv_u2", 0, unlimited=True))
    assert isinstance(again.account.balance, UnlimitedBalance)


@pytest.mark.asyncio
async def test_large_finite_balance_stays_finite(ledger, store):
    """센티널 이상의 유한 잔액도 다시 읽었을 때 유한 잔액으로 유지된다"""

    await ledger.apply_grant(_grant("inv_a", 500000))
    await ledger.apply_grant(_grant("inv_b", 500000))

    account = await ledger.get_account("u1")
    assert account.balance == FiniteBalance(1000000)
    assert store.document("u1")["isUnlimited"] is False

    result = await ledger.apply_grant(_grant("inv_c", 10))
    assert result.account.balance == FiniteBalance(1000010)
    assert sum(t.credit_delta for t in result.account.transactions) == 1000010


@pytest.mark.asyncio
async def test_bare_cancel_resets_balance_and_plan(ledger, store):
    """상태만 지정한 해지도 잔액 0, plan "expired" 로 만든다"""

    await ledger.apply_grant(_grant("inv_1", 20))

    result = await ledger.apply_status_change(AccountStatusChange(account_id="u1", new_status=PaymentStatus.CANCELED))

    account = result.account
    assert account.balance == FiniteBalance(0)
    assert account.plan_label == "expired"
    assert account.payment_status == PaymentStatus.CANCELED
    assert account.subscription_ended_at is not None
    assert [t.transaction_id for t in account.transactions] == ["inv_1"]
    assert store.document("u1")["credits"] == 0


@pytest.mark.asyncio
async def test_bare_expire_clears_unlimited(ledger):
    await ledger.apply_grant(_grant("inv_u", 0, unlimited=True, plan="Unlimited"))

    result = await ledger.apply_status_change(AccountStatusChange(account_id="u1", new_status=PaymentStatus.EXPIRED))

    assert result.account.balance == ZERO
    assert not result.account.is_unlimited
    assert result.account.plan_label == "expired"


@pytest.mark.asyncio
async def test_get_account_defaults_for_unknown_account(ledger):
    account = await ledger.get_account("nobody")

    assert account.balance == ZERO
    assert account.transactions == []
    assert account.payment_status == PaymentStatus.ACTIVE


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_apply_once():
    store = InMemoryAccountStore(latency=0)
    ledger = LedgerService(store, max_attempts=20, backoff_factor=0)

    results = await asyncio.gather(*(ledger.apply_grant(_grant("inv_dup", 20)) for _ in range(5)))

    assert sum(isinstance(r, Applied) for r in results) == 1
    assert sum(isinstance(r, AlreadyApplied) for r in results) == 4
    document = store.document("u1")
    assert document["credits"] == 20
    assert [p["invoiceId"] for p in document["payments"]] == ["inv_dup"]


@pytest.mark.asyncio
async def test_concurrent_distinct_grants_all_apply():
    store = InMemoryAccountStore(latency=0)
    ledger = LedgerService(store, max_attempts=20, backoff_factor=0)

    await asyncio.gather(*(ledger.apply_grant(_grant(f"inv_{i}", 10)) for i in range(4)))

    account = await ledger.get_account("u1")
    assert account.credit_balance == 40
    assert sorted(t.transaction_id for t in account.transactions) == ["inv_0", "inv_1", "inv_2", "inv_3"]


@pytest.mark.asyncio
async def test_version_conflict_is_retried():
    store = FlakyStore(conflicts=2)
    ledger = LedgerService(store, max_attempts=5, backoff_factor=0)

    result = await ledger.apply_grant(_grant("inv_1", 20))

    assert isinstance(result, Applied)
    assert store.cas_calls == 3
    assert store.document("u1")["credits"] == 20


@pytest.mark.asyncio
async def test_store_unavailable_exhausts_attempts():
    store = FlakyStore(unavailable=10)
    ledger = LedgerService(store, max_attempts=3, backoff_factor=0)

    with pytest.raises(TransientFailureException) as excinfo:
        await ledger.apply_grant(_grant("inv_1", 20))

    assert excinfo.value.status_code == 500
    assert store.cas_calls == 3
    assert store.document("u1") is None


@pytest.mark.asyncio
async def test_permanent_store_error_propagates():
    store = FlakyStore(fatal=True)
    ledger = LedgerService(store, max_attempts=3, backoff_factor=0)

    with pytest.raises(AccountStoreError):
        await ledger.apply_grant(_grant("inv_1", 20))

    assert store.cas_calls == 1


@pytest.mark.asyncio
async def test_payment_failed_only_changes_status(ledger):
    await ledger.apply_grant(_grant("inv_1", 20))

    result = await ledger.apply_status_change(
        AccountStatusChange(account_id="u1", new_status=PaymentStatus.PAST_DUE)
    )

    assert result.account.payment_status == PaymentStatus.PAST_DUE
    assert result.account.credit_balance == 20
    assert result.account.plan_label == "Basic"
    assert result.account.subscription_ended_at is None


@pytest.mark.asyncio
async def test_status_change_creates_missing_account(ledger, store):
    await ledger.apply_status_change(
        AccountStatusChange(account_id="u9", new_status=PaymentStatus.CANCELED, balance=ZERO, plan_label="expired")
    )

    document = store.document("u9")
    assert document["lastPaymentStatus"] == "canceled"
    assert document["credits"] == 0
    assert document["payments"] == []


@pytest.mark.asyncio
async def test_grant_after_cancel_reactivates(ledger):
    await ledger.apply_grant(_grant("inv_1", 20))
    await ledger.apply_status_change(
        AccountStatusChange(account_id="u1", new_status=PaymentStatus.CANCELED, balance=ZERO, plan_label="expired")
    )

    result = await ledger.apply_grant(_grant("inv_2", 30, plan="Pro"))

    assert result.account.credit_balance == 30
    assert result.account.payment_status == PaymentStatus.ACTIVE
    assert result.account.subscription_ended_at is None


@pytest.mark.asyncio
async def test_event_log_failure_does_not_fail_grant():
    ledger = LedgerService(FailingLogStore(), backoff_factor=0)

    result = await ledger.apply_grant(_grant("inv_1", 5))

    assert isinstance(result, Applied)
    assert result.account.credit_balance == 5


@pytest.mark.asyncio
async def test_grant_events_are_logged(ledger, store):
    await ledger.apply_grant(_grant("inv_1", 5))

    assert store.events[-1]["event_type"] == "ledger_grant_applied"
    assert store.events[-1]["account_id"] == "u1"
    assert store.events[-1]["event_data"]["transaction_id"] == "inv_1"


@pytest.mark.asyncio
async def test_grant_requires_identifiers(ledger):
    with pytest.raises(ValueError):
        await ledger.apply_grant(_grant("", 5))


def test_invalid_max_attempts():
    with pytest.raises(ValueError):
        LedgerService(InMemoryAccountStore(), max_attempts=0)
