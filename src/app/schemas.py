"""
API 요청/응답 스키마 정의
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class CheckoutSessionRequest(BaseModel):
    """구독 Checkout 세션 생성 요청 (필수값 검증은 서비스에서 400 으로 처리)"""
    model_config = ConfigDict(populate_by_name=True)

    uid: Optional[str] = Field(None, description="계정 ID (client_reference_id 로 전달)")
    email: Optional[str] = Field(None, description="고객 이메일")
    price_id: Optional[str] = Field(None, alias="priceId", description="Stripe Price ID")


class CheckoutSessionResponse(BaseModel):
    """Checkout 세션 생성 응답"""
    url: Optional[str] = Field(None, description="Stripe Checkout 리다이렉트 URL")


class DeleteUserDataRequest(BaseModel):
    """계정 데이터 삭제 요청"""
    uid: Optional[str] = Field(None, description="삭제할 계정 ID")


class WebhookAck(BaseModel):
    """웹훅 수신 확인"""
    received: bool = True
