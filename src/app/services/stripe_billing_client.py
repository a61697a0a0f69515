"""Stripe API 클라이언트 (stripe SDK 비동기 서비스 사용)"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

import stripe

from core.interfaces import IPaymentProviderClient
from core.responses import SignatureInvalidException, TransientFailureException


logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


class StripeAPIError(RuntimeError):
    """Stripe API 오류"""

    def __init__(
        self,
        message: str,
        status_code: int,
        payload: Optional[Dict[str, Any]] = None,
        *,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}
        self.code = code or self._extract_error_code()

    def _extract_error_code(self) -> Optional[str]:
        """응답 페이로드에서 오류 코드를 추출"""

        error = self.payload.get("error") if isinstance(self.payload, dict) else None
        if isinstance(error, dict):
            return error.get("code") or error.get("type")
        return None

    @property
    def retryable(self) -> bool:
        """네트워크 오류 또는 일시적 상태 코드 여부"""

        return self.status_code == 0 or self.status_code in RETRYABLE_STATUS


def _as_dict(value: Any) -> Dict[str, Any]:
    """StripeObject 응답을 일반 dict 로 변환"""

    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value or {})


class StripeBillingClient(IPaymentProviderClient):
    """Stripe API 비동기 클라이언트

    요청 인코딩과 전송은 stripe SDK(StripeClient, httpx 전송)에 맡기고,
    재시도와 오류 메시지 매핑은 이 클래스에서 처리합니다.
    """

    ERROR_CODE_MESSAGES: Dict[str, str] = {
        "resource_missing": "요청한 Stripe 리소스를 찾을 수 없습니다.",
        "api_key_expired": "Stripe API 키가 만료되었습니다.",
        "parameter_missing": "Stripe API 필수 파라미터가 누락되었습니다.",
        "parameter_invalid_empty": "Stripe API 파라미터 값이 비어 있습니다.",
        "rate_limit": "Stripe API 호출이 너무 많습니다. 잠시 후 다시 시도하세요.",
        "lock_timeout": "Stripe 리소스가 잠겨 있습니다. 잠시 후 다시 시도하세요.",
    }

    STATUS_MESSAGES: Dict[int, str] = {
        0: "Stripe API 네트워크 오류가 발생했습니다.",
        400: "Stripe API 요청 파라미터가 올바르지 않습니다.",
        401: "Stripe API 인증에 실패했습니다.",
        402: "Stripe 결제 요청이 거절되었습니다.",
        403: "Stripe API 접근 권한이 없습니다.",
        404: "요청한 Stripe 리소스를 찾지 못했습니다.",
        409: "Stripe 리소스 상태 충돌이 발생했습니다.",
        429: "Stripe API 호출이 제한되었습니다. 잠시 후 다시 시도하세요.",
        500: "Stripe API 서버 오류가 발생했습니다.",
        503: "Stripe API 서비스가 일시적으로 불가합니다.",
    }

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        base_url: str = "https://api.stripe.com",
        timeout: float = 15.0,
        *,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        sdk_client: Optional[stripe.StripeClient] = None,
    ) -> None:
        if not api_key or not api_key.strip():
            raise ValueError("Stripe 시크릿 키가 설정되지 않았습니다.")

        self.api_key = api_key
        self.webhook_secret = (webhook_secret or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.backoff_factor = max(0.0, float(backoff_factor))
        # SDK 자체 재시도는 끄고 아래 _call 루프에서만 재시도
        self.sdk = sdk_client or stripe.StripeClient(
            api_key,
            base_addresses={"api": self.base_url},
            max_network_retries=0,
            http_client=stripe.HTTPXClient(timeout=timeout),
        )

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Stripe-Signature 검증 후 이벤트 dict 반환"""

        if not self.webhook_secret:
            # 설정 누락은 발신자 잘못이 아니므로 재전송되도록 5xx
            logger.error("[STRIPE] webhook secret not configured; asking Stripe to redeliver")
            raise TransientFailureException("웹훅 시크릿이 설정되지 않았습니다")

        if not signature_header:
            logger.warning("[STRIPE] missing Stripe-Signature header")
            raise SignatureInvalidException("Stripe-Signature 헤더가 없습니다")

        try:
            stripe.Webhook.construct_event(raw_body, signature_header, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.error("[STRIPE] signature mismatch: %s", exc)
            raise SignatureInvalidException(f"Webhook Error: {exc}") from exc
        except ValueError as exc:
            logger.error("[STRIPE] webhook payload is not valid JSON: %s", exc)
            raise SignatureInvalidException("웹훅 페이로드를 파싱하지 못했습니다") from exc

        event = json.loads(raw_body)
        if not isinstance(event, dict):
            raise SignatureInvalidException("웹훅 페이로드 형식이 올바르지 않습니다")
        return event

    async def _call(self, operation: str, request: Callable[[], Awaitable[Any]]) -> Dict[str, Any]:
        """SDK 호출을 재시도하며 실행하고 dict 로 반환"""

        for attempt in range(self.max_retries + 1):
            try:
                return _as_dict(await request())
            except stripe.StripeError as exc:
                error = self._to_api_error(exc)

            if error.retryable and attempt < self.max_retries:
                logger.warning(
                    "[STRIPE] API request retry: %s status=%s code=%s attempt=%s",
                    operation,
                    error.status_code,
                    error.code,
                    attempt + 1,
                )
                await self._sleep_backoff(attempt)
                continue

            logger.error(
                "[STRIPE] API request failed: %s status=%s code=%s",
                operation,
                error.status_code,
                error.code,
            )
            raise error

        # 이 지점에 도달했다면 모든 재시도가 실패한 것
        raise StripeAPIError("Stripe API 요청이 반복적으로 실패했습니다.", status_code=0)

    async def retrieve_checkout_session(
        self,
        session_id: str,
        expand: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Checkout 세션 조회 (expand 지원)"""

        params = {"expand": list(expand)} if expand else None
        return await self._call(
            f"checkout.sessions.retrieve {session_id}",
            lambda: self.sdk.v1.checkout.sessions.retrieve_async(session_id, params=params),
        )

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """구독 세부 정보를 조회"""

        return await self._call(
            f"subscriptions.retrieve {subscription_id}",
            lambda: self.sdk.v1.subscriptions.retrieve_async(subscription_id),
        )

    async def retrieve_product(self, product_id: str) -> Dict[str, Any]:
        """상품 메타데이터 조회"""

        return await self._call(
            f"products.retrieve {product_id}",
            lambda: self.sdk.v1.products.retrieve_async(product_id),
        )

    async def create_checkout_session(
        self,
        account_id: str,
        email: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        """구독 Checkout 세션 생성 (구독 메타데이터에 uid 포함)"""

        params = {
            "mode": "subscription",
            "customer_email": email,
            "client_reference_id": account_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            # 갱신 인보이스에서 계정을 찾으려면 구독 메타데이터에 uid 가 있어야 함
            "subscription_data": {"metadata": {"uid": account_id}},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        # 재시도 시에도 동일한 키를 보내야 중복 생성되지 않음
        options = {"idempotency_key": uuid4().hex}
        return await self._call(
            "checkout.sessions.create",
            lambda: self.sdk.v1.checkout.sessions.create_async(params=params, options=options),
        )

    async def delete_customer(self, customer_id: str) -> Dict[str, Any]:
        """고객 삭제"""

        return await self._call(
            f"customers.delete {customer_id}",
            lambda: self.sdk.v1.customers.delete_async(customer_id),
        )

    async def _sleep_backoff(self, attempt: int) -> None:
        """재시도 전 지수 백오프 딜레이"""

        delay = self.backoff_factor * (2**attempt)
        if delay > 0:
            await asyncio.sleep(delay)

    def _to_api_error(self, exc: stripe.StripeError) -> StripeAPIError:
        """SDK 예외를 상태 코드/오류 코드가 담긴 StripeAPIError 로 변환"""

        status_code = exc.http_status or 0
        payload = exc.json_body if isinstance(exc.json_body, dict) else {"error": {"message": str(exc)}}
        message, code = self._resolve_error_message(payload, status_code)
        if status_code == 0 and not code:
            code = "network_error"
        error = StripeAPIError(message, status_code, payload, code=code or exc.code)
        error.__cause__ = exc
        return error

    def _resolve_error_message(self, payload: Dict[str, Any], status_code: int) -> tuple[str, Optional[str]]:
        """Stripe 오류 응답을 기반으로 메시지와 코드 결정"""

        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            code = error.get("code") or error.get("type")
            if code and code in self.ERROR_CODE_MESSAGES:
                return self.ERROR_CODE_MESSAGES[code], code

            message = error.get("message")
            if status_code and isinstance(message, str) and message.strip():
                return message, code

        status_message = self.STATUS_MESSAGES.get(status_code)
        if status_message:
            return status_message, None

        return "Stripe API 요청에 실패했습니다", None
