"""
애플리케이션 설정 관리
"""
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_FILE_PATH = Path(__file__).resolve()

STORE_BACKENDS = ("memory", "supabase", "firestore")


def _collect_env_files(file_path: Path) -> tuple[Path, ...]:
    """환경 파일 후보를 가까운 디렉터리부터 수집"""

    collected: list[Path] = []
    seen: set[Path] = set()

    for directory in file_path.parents:
        for name in (".env", ".env.local"):
            candidate = directory / name
            if candidate.exists() and candidate not in seen:
                collected.append(candidate)
                seen.add(candidate)

    return tuple(collected)


_ENV_FILES = _collect_env_files(_FILE_PATH)


def _load_dotenv_files() -> None:
    """프로젝트 전체에서 활용할 .env 파일들을 순차적으로 로드"""

    for dotenv_path in _ENV_FILES:
        load_dotenv(dotenv_path, override=False)


_load_dotenv_files()

class Settings(BaseSettings):
    """애플리케이션 설정"""

    model_config = SettingsConfigDict(
        env_file=tuple(str(path) for path in _ENV_FILES) if _ENV_FILES else None,
        case_sensitive=True,
        extra="allow",  # 추가 환경변수 허용
    )

    # 서버 설정
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    DEBUG: bool = False
    CORS_ALLOW_ORIGINS: List[str] = ["*"]

    # 로깅 설정
    LOG_LEVEL: str = "INFO"

    # Stripe 설정
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_BASE_URL: str = "https://api.stripe.com"
    STRIPE_TIMEOUT_SECONDS: float = 15.0
    STRIPE_MAX_RETRIES: int = 3
    STRIPE_BACKOFF_FACTOR: float = 0.5

    # Checkout 리다이렉트
    CHECKOUT_SUCCESS_URL: str = "http://localhost:3000/success"
    CHECKOUT_CANCEL_URL: str = "http://localhost:3000/"

    # 계정 저장소 설정
    ACCOUNT_STORE_BACKEND: str = "memory"

    # Supabase 설정
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    SUPABASE_ACCOUNTS_TABLE: str = "credit_accounts"
    SUPABASE_LOGS_TABLE: str = "system_logs"

    # Firestore REST 설정
    FIREBASE_PROJECT_ID: Optional[str] = None
    FIREBASE_API_KEY: Optional[str] = None
    FIREBASE_COLLECTION: str = "users"

    # 원장 재시도 설정
    LEDGER_MAX_ATTEMPTS: int = 5
    LEDGER_BACKOFF_FACTOR: float = 0.1

    @field_validator('ACCOUNT_STORE_BACKEND')
    @classmethod
    def validate_store_backend(cls, v):
        backend = (v or "").strip().lower()
        if backend not in STORE_BACKENDS:
            raise ValueError(f'ACCOUNT_STORE_BACKEND는 {", ".join(STORE_BACKENDS)} 중 하나여야 합니다')
        return backend

    @field_validator('LEDGER_MAX_ATTEMPTS', 'STRIPE_MAX_RETRIES')
    @classmethod
    def validate_attempts(cls, v, info):
        minimum = 1 if info.field_name == 'LEDGER_MAX_ATTEMPTS' else 0
        if v < minimum:
            raise ValueError(f'{info.field_name}는 {minimum} 이상이어야 합니다')
        return v

# 전역 설정 인스턴스
settings = Settings()
