from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
from contextlib import asynccontextmanager
import logging
from datetime import datetime

# Core imports
from core.config import settings
from core.factory import ServiceFactory
from core.middleware import setup_exception_handlers

# Routers Import
from routers import public_router, stripe_router

# 로깅 설정
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """애플리케이션 라이프사이클 관리"""
    ServiceFactory.configure_dependencies()
    logger.info(
        "의존성 설정 완료: store=%s stripe=%s",
        settings.ACCOUNT_STORE_BACKEND,
        bool(settings.STRIPE_SECRET_KEY),
    )

    try:
        await ServiceFactory.get_account_store().log_system_event(
            event_type='server_start',
            event_data={'status': 'success', 'timestamp': datetime.now().isoformat()}
        )
    except Exception as e:
        logger.error(f"시작 로그 기록 실패: {e}")

    yield

    ServiceFactory.reset()
    logger.info("서버 종료")


app = FastAPI(
    title="Credit Ledger Webhook Server",
    description="Stripe webhook receiver that applies subscription credits to account balances",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.DEBUG
)

# 예외 처리 미들웨어 설정
setup_exception_handlers(app)

# CORS 미들웨어 추가
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(public_router.router)
app.include_router(stripe_router.router)  # Stripe 웹훅/Checkout 라우터

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
