"""
서비스 기본 클래스
"""
import logging
from typing import Dict, Any
from core.responses import ValidationException
from core.interfaces import IAccountStore

logger = logging.getLogger(__name__)

class BaseService:
    """모든 서비스의 기본 클래스"""

    def __init__(self, account_store: IAccountStore):
        self.account_store = account_store
        self.logger = logging.getLogger(self.__class__.__name__)

    async def log_account_event(self, account_id: str, action: str, data: Dict[str, Any] = None):
        """계정 이벤트 로깅 (실패해도 원장 처리에는 영향 없음)"""
        try:
            await self.account_store.log_system_event(
                event_type=f"ledger_{action}",
                event_data=data or {},
                account_id=account_id
            )
        except Exception as e:
            self.logger.warning(f"이벤트 로깅 실패: action={action} account_id={account_id} error={e}")

    def validate_required_fields(self, data: Dict[str, Any], required_fields: list, error_code: str = "MISSING_REQUIRED_FIELDS"):
        """필수 필드 검증"""
        missing_fields = [field for field in required_fields if not data.get(field)]
        if missing_fields:
            raise ValidationException(
                f"필수 필드가 누락되었습니다: {', '.join(missing_fields)}",
                error_code
            )
