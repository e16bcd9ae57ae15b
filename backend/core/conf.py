from functools import lru_cache
from typing import Any, Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from backend.core.path_conf import BASE_PATH


class Settings(BaseSettings):
    """全局配置"""

    model_config = SettingsConfigDict(
        env_file=f'{BASE_PATH}/.env',
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=True,
    )

    # .env 当前环境
    ENVIRONMENT: Literal['dev', 'test', 'prod'] = 'dev'

    # FastAPI
    FASTAPI_API_V1_PATH: str = '/api/v1'
    FASTAPI_TITLE: str = 'CreditCore'
    FASTAPI_DESCRIPTION: str = 'Credit accounting core for AI content generation'
    FASTAPI_DOCS_URL: str = '/docs'
    FASTAPI_REDOC_URL: str = '/redoc'
    FASTAPI_OPENAPI_URL: str | None = '/openapi'

    # .env 数据库
    DATABASE_TYPE: Literal['postgresql', 'sqlite'] = 'postgresql'
    DATABASE_HOST: str = '127.0.0.1'
    DATABASE_PORT: int = 5432
    DATABASE_USER: str = 'postgres'
    DATABASE_PASSWORD: str = ''

    # 数据库
    DATABASE_ECHO: bool | Literal['debug'] = False
    DATABASE_POOL_ECHO: bool | Literal['debug'] = False
    DATABASE_SCHEMA: str = 'credit_core'
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # .env Redis
    REDIS_HOST: str = '127.0.0.1'
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: str = ''
    REDIS_USERNAME: str = 'default'
    REDIS_DATABASE: int = 0

    # Redis
    REDIS_TIMEOUT: int = 5

    # .env Token
    TOKEN_SECRET_KEY: str = ''  # 密钥 secrets.token_urlsafe(32)

    # Token
    TOKEN_ALGORITHM: str = 'HS256'

    # Admin: account ids allowed to call the admin credit endpoints in addition to role=admin tokens
    ADMIN_ACCOUNT_IDS: list[str] = []

    # .env Stripe
    STRIPE_SECRET_KEY: str = ''
    STRIPE_WEBHOOK_SECRET: str = ''

    # Stripe
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    ##################################################
    # [ Module ] Billing - credits
    ##################################################
    # Seed balance for accounts created on first read/write
    CREDIT_INITIAL_GRANT: int = 0

    # Transient ledger failures are retried this many times in total before giving up
    CREDIT_WRITE_MAX_ATTEMPTS: int = 3
    CREDIT_WRITE_RETRY_BACKOFF_SECONDS: float = 0.05

    # Balance read-through cache (Redis); invalidated on every ledger write
    CREDIT_BALANCE_CACHE_ENABLED: bool = False
    CREDIT_BALANCE_CACHE_TTL: int = 300  # 5 分钟

    # Plan limits for course generation
    COURSE_MAX_CHAPTERS: int = 10
    COURSE_MAX_LESSONS_PER_CHAPTER: int = 10

    # Transaction history
    CREDIT_HISTORY_DEFAULT_PAGE_SIZE: int = 20
    CREDIT_HISTORY_MAX_PAGE_SIZE: int = 100

    # Reconciliation: consumptions still unpatched after this long are reported
    CREDIT_UNRESOLVED_DEBIT_MINUTES: int = 30

    # 日志
    LOG_FORMAT: str = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
    LOG_DATE_FORMAT: str = '%Y-%m-%d %H:%M:%S'

    # 日志（控制台）
    LOG_STD_LEVEL: str = 'INFO'

    @model_validator(mode='before')
    @classmethod
    def check_env(cls, values: Any) -> Any:
        """检查环境变量"""
        if values.get('ENVIRONMENT') == 'prod':
            values['FASTAPI_OPENAPI_URL'] = None
        return values


@lru_cache
def get_settings() -> Settings:
    """获取全局配置单例"""
    return Settings()


# 创建全局配置实例
settings = get_settings()
