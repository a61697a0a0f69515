"""
서비스 인터페이스 정의
"""
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List

from core.ledger_models import (
    Account,
    AccountStatusChange,
    Applied,
    CreditGrant,
    GrantResult,
    NormalizedEvent,
    StoredAccount,
)

class IPaymentProviderClient(ABC):
    """결제 공급자 클라이언트 인터페이스"""

    @abstractmethod
    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """웹훅 서명 검증 후 이벤트 반환"""
        pass

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        """Checkout 세션 조회"""
        pass

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """구독 조회"""
        pass

    @abstractmethod
    async def retrieve_product(self, product_id: str) -> Dict[str, Any]:
        """상품 조회"""
        pass

    @abstractmethod
    async def create_checkout_session(
        self,
        account_id: str,
        email: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        """구독 Checkout 세션 생성"""
        pass

    @abstractmethod
    async def delete_customer(self, customer_id: str) -> Dict[str, Any]:
        """고객 삭제 (모든 구독 즉시 종료)"""
        pass

class IAccountStore(ABC):
    """계정 레코드 저장소 인터페이스"""

    @abstractmethod
    async def read(self, account_id: str) -> StoredAccount:
        """계정과 버전 토큰 조회 (없으면 기본 계정, version=None)"""
        pass

    @abstractmethod
    async def compare_and_swap(self, account_id: str, expected_version: Any, account: Account) -> Any:
        """버전이 일치할 때만 기록하고 새 버전 반환 (불일치 시 VersionConflictError)"""
        pass

    @abstractmethod
    async def delete(self, account_id: str) -> bool:
        """계정 레코드 삭제"""
        pass

    async def log_system_event(self, event_type: str, event_data: Dict[str, Any], account_id: str = None) -> bool:
        """시스템 이벤트 로깅 (기본 구현은 기록하지 않음)"""
        return False

class IEventNormalizer(ABC):
    """공급자 이벤트 정규화 인터페이스"""

    @abstractmethod
    async def normalize(self, event: Dict[str, Any]) -> NormalizedEvent:
        """이벤트를 CreditGrant / AccountStatusChange / Ignored 로 변환"""
        pass

class ILedgerService(ABC):
    """크레딧 원장 서비스 인터페이스"""

    @abstractmethod
    async def apply_grant(self, grant: CreditGrant) -> GrantResult:
        """트랜잭션 ID 당 한 번만 크레딧 지급"""
        pass

    @abstractmethod
    async def apply_status_change(self, change: AccountStatusChange) -> Applied:
        """결제 상태 변경 적용"""
        pass

    @abstractmethod
    async def get_account(self, account_id: str) -> Account:
        """계정 조회"""
        pass
