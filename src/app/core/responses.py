"""
공통 응답 모델 및 예외 클래스
"""
from typing import Generic, TypeVar, Optional, Any, Dict
from pydantic import BaseModel, ConfigDict
import logging

logger = logging.getLogger(__name__)

T = TypeVar('T')

class APIResponse(BaseModel, Generic[T]):
    """표준 API 응답 모델"""
    status: str  # "success" or "error"
    data: Optional[T] = None
    message: Optional[str] = None
    error_code: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "error",
                "message": "웹훅 서명이 유효하지 않습니다",
                "error_code": "SIGNATURE_INVALID",
            }
        }
    )

# 커스텀 예외 클래스들
class BusinessException(Exception):
    """비즈니스 로직 예외"""
    def __init__(self, message: str, error_code: str = None, status_code: int = 400):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)

class ValidationException(BusinessException):
    """입력 검증 예외"""
    def __init__(self, message: str = "입력 데이터가 유효하지 않습니다", error_code: str = "VALIDATION_ERROR"):
        super().__init__(message, error_code, 400)

class SignatureInvalidException(BusinessException):
    """웹훅 서명 검증 실패 (재시도 대상 아님)"""
    def __init__(self, message: str = "웹훅 서명이 유효하지 않습니다"):
        super().__init__(message, "SIGNATURE_INVALID", 400)

class TransientFailureException(BusinessException):
    """일시적 실패 - 웹훅 공급자가 재전송하도록 5xx 로 응답"""
    def __init__(self, message: str = "일시적인 처리 오류가 발생했습니다", cause: Optional[Exception] = None):
        super().__init__(message, "TRANSIENT_FAILURE", 500)
        self.cause = cause

class ExternalServiceException(BusinessException):
    """외부 서비스 호출 예외"""
    def __init__(self, service_name: str, message: str = None):
        msg = message or f"{service_name} 서비스 호출에 실패했습니다"
        super().__init__(msg, "EXTERNAL_SERVICE_ERROR", 502)

# 응답 헬퍼 함수들
def success_response(data: Any = None, message: str = "성공") -> APIResponse:
    """성공 응답 생성"""
    return APIResponse(status="success", data=data, message=message)

def error_response(
    message: str = "오류가 발생했습니다",
    error_code: str = None,
    data: Any = None
) -> APIResponse:
    """오류 응답 생성"""
    return APIResponse(
        status="error",
        message=message,
        error_code=error_code,
        data=data
    )

# 로깅 헬퍼
def log_operation(operation: str, account_id: str = None, data: Dict = None):
    """작업 로깅"""
    log_data = {
        "operation": operation,
        "account_id": account_id,
        **(data or {})
    }
    logger.info(f"Operation: {operation}", extra={"ledger": log_data})
