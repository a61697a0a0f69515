"""
계정 관련 부가 기능 서비스
구독 Checkout 세션 생성과 계정 데이터 삭제 (원장 외부 기능)
"""
from typing import Any, Dict, Optional

from core.base_service import BaseService
from core.interfaces import IAccountStore, IPaymentProviderClient
from core.responses import ExternalServiceException, ValidationException
from services.stripe_billing_client import StripeAPIError


class AccountService(BaseService):
    """Checkout 세션 생성 및 계정 삭제"""

    def __init__(
        self,
        account_store: IAccountStore,
        provider_client: Optional[IPaymentProviderClient],
        success_url: str,
        cancel_url: str,
    ):
        super().__init__(account_store)
        self.provider_client = provider_client
        self.success_url = success_url
        self.cancel_url = cancel_url

    def _require_provider(self) -> IPaymentProviderClient:
        if self.provider_client is None:
            raise ExternalServiceException("Stripe", "Stripe 클라이언트가 설정되지 않았습니다")
        return self.provider_client

    async def create_checkout_session(self, uid: Optional[str], email: Optional[str], price_id: Optional[str]) -> Dict[str, Any]:
        """구독 Checkout 세션 생성 후 리다이렉트 URL 반환"""
        if not price_id:
            self.logger.error("Checkout 요청에 priceId 누락")
            raise ValidationException("Price ID가 누락되었습니다", "MISSING_PRICE_ID")
        self.validate_required_fields({"uid": uid, "email": email}, ["uid", "email"], "MISSING_USER_DATA")

        provider = self._require_provider()
        try:
            session = await provider.create_checkout_session(
                account_id=uid,
                email=email,
                price_id=price_id,
                success_url=self.success_url,
                cancel_url=self.cancel_url,
            )
        except StripeAPIError as e:
            self.logger.error(f"Checkout 세션 생성 실패: uid={uid} status={e.status_code} code={e.code}")
            raise ExternalServiceException("Stripe", str(e)) from e

        self.logger.info(f"Checkout 세션 생성: {session.get('id')} uid={uid}")
        return {"url": session.get("url"), "session_id": session.get("id")}

    async def delete_account_data(self, uid: Optional[str]) -> bool:
        """Stripe 고객과 계정 레코드 삭제"""
        self.validate_required_fields({"uid": uid}, ["uid"], "MISSING_USER_DATA")

        stored = await self.account_store.read(uid)
        if not stored.exists:
            self.logger.info(f"삭제할 계정 없음: {uid}")
            return False

        customer_id = stored.account.customer_id
        if customer_id and self.provider_client is not None:
            try:
                await self.provider_client.delete_customer(customer_id)
                self.logger.info(f"Stripe 고객 삭제 완료: {customer_id}")
            except StripeAPIError as e:
                # 고객이 이미 없어도 계정 데이터 삭제는 계속 진행
                self.logger.warning(f"Stripe 고객 삭제 실패: {customer_id} error={e}")

        deleted = await self.account_store.delete(uid)
        self.logger.info(f"계정 데이터 삭제 완료: {uid} deleted={deleted}")
        return deleted
