"""
서비스 팩토리 - 의존성 생성 및 조회
"""
import logging
from typing import Any, Dict, Optional

from supabase import create_client

from core.config import Settings, settings
from core.interfaces import IAccountStore, IEventNormalizer, ILedgerService, IPaymentProviderClient
from services.account_service import AccountService
from services.account_store import FirestoreRestAccountStore, InMemoryAccountStore, SupabaseAccountStore
from services.event_normalizer import EventNormalizer
from services.ledger_service import LedgerService
from services.stripe_billing_client import StripeBillingClient

logger = logging.getLogger(__name__)

class ServiceFactory:
    """서비스 의존성 등록 및 초기화"""

    _services: Dict[str, Any] = {}

    @classmethod
    def configure_dependencies(cls, config: Settings = settings) -> None:
        """설정에 따라 서비스 그래프 구성"""
        provider_client = cls._build_provider_client(config)
        account_store = cls._build_account_store(config)

        cls._services = {
            "provider_client": provider_client,
            "account_store": account_store,
            "event_normalizer": EventNormalizer(provider_client) if provider_client else None,
            "ledger_service": LedgerService(
                account_store,
                max_attempts=config.LEDGER_MAX_ATTEMPTS,
                backoff_factor=config.LEDGER_BACKOFF_FACTOR,
            ),
            "account_service": AccountService(
                account_store,
                provider_client,
                success_url=config.CHECKOUT_SUCCESS_URL,
                cancel_url=config.CHECKOUT_CANCEL_URL,
            ),
        }

    @staticmethod
    def _build_provider_client(config: Settings) -> Optional[IPaymentProviderClient]:
        if not config.STRIPE_SECRET_KEY:
            logger.warning("[STRIPE] STRIPE_SECRET_KEY가 설정되지 않아 StripeBillingClient를 초기화하지 않습니다.")
            return None
        if not config.STRIPE_WEBHOOK_SECRET:
            logger.warning("[STRIPE] STRIPE_WEBHOOK_SECRET가 설정되지 않아 모든 웹훅이 거부됩니다.")
        return StripeBillingClient(
            api_key=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
            base_url=config.STRIPE_API_BASE_URL,
            timeout=config.STRIPE_TIMEOUT_SECONDS,
            max_retries=config.STRIPE_MAX_RETRIES,
            backoff_factor=config.STRIPE_BACKOFF_FACTOR,
        )

    @staticmethod
    def _build_account_store(config: Settings) -> IAccountStore:
        backend = config.ACCOUNT_STORE_BACKEND
        if backend == "supabase":
            if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE_KEY:
                raise ValueError("SUPABASE_URL과 SUPABASE_SERVICE_ROLE_KEY 환경변수가 필요합니다.")
            client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY)
            return SupabaseAccountStore(
                client,
                table=config.SUPABASE_ACCOUNTS_TABLE,
                logs_table=config.SUPABASE_LOGS_TABLE,
            )
        if backend == "firestore":
            return FirestoreRestAccountStore(
                project_id=config.FIREBASE_PROJECT_ID,
                api_key=config.FIREBASE_API_KEY,
                collection=config.FIREBASE_COLLECTION,
            )

        logger.warning("[LEDGER] 메모리 저장소를 사용합니다. 재시작 시 잔액이 사라집니다.")
        return InMemoryAccountStore()

    @classmethod
    def override(cls, **services: Any) -> None:
        """서비스 교체 (테스트용)"""
        cls._services.update(services)

    @classmethod
    def reset(cls) -> None:
        cls._services = {}

    @classmethod
    def _get(cls, name: str) -> Any:
        if name not in cls._services:
            raise ValueError(f"Service {name} not registered")
        return cls._services[name]

    @classmethod
    def get_provider_client(cls) -> Optional[IPaymentProviderClient]:
        """Stripe 클라이언트 조회 (미설정 시 None)"""
        return cls._services.get("provider_client")

    @classmethod
    def get_account_store(cls) -> IAccountStore:
        """계정 저장소 조회"""
        return cls._get("account_store")

    @classmethod
    def get_event_normalizer(cls) -> Optional[IEventNormalizer]:
        """이벤트 정규화기 조회 (Stripe 미설정 시 None)"""
        return cls._services.get("event_normalizer")

    @classmethod
    def get_ledger_service(cls) -> ILedgerService:
        """원장 서비스 조회"""
        return cls._get("ledger_service")

    @classmethod
    def get_account_service(cls) -> AccountService:
        """계정 서비스 조회"""
        return cls._get("account_service")
