"""Public endpoints (no auth required)."""
from datetime import datetime, timezone

from fastapi import APIRouter

from core.config import settings

router = APIRouter(tags=["public"])


@router.get("/")
async def root():
    return {"status": "active", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/health")
async def health_check():
    # 저장소 연결은 검사하지 않고 설정 상태만 반환
    return {
        "status": "ok",
        "store_backend": settings.ACCOUNT_STORE_BACKEND,
        "stripe_configured": bool(settings.STRIPE_SECRET_KEY),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
