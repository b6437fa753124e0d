from pydantic_settings import BaseSettings
from pydantic import AnyUrl
from functools import lru_cache


class Settings(BaseSettings):
    # core
    ENV: str = "dev"
    API_PREFIX: str = "/api"

    # database & redis
    DATABASE_URL: AnyUrl
    # Keep this as a plain string so redis:// URLs are always accepted
    REDIS_URL: str

    # Oxylabs realtime scraper (search / product lookup / Q&A)
    OXYLABS_USERNAME: str | None = None
    OXYLABS_PASSWORD: str | None = None
    OXYLABS_BASE_URL: str = "https://realtime.oxylabs.io/v1"

    # Apify async review actor
    APIFY_API_TOKEN: str | None = None
    APIFY_BASE_URL: str = "https://api.apify.com/v2"
    APIFY_ACTOR_ID: str = "delicious_zebu~amazon-reviews-scraper-with-advanced-filters"

    # auth / security
    API_AUTH_KEY: str | None = None
    FRONTEND_ORIGIN: str | None = None
    # Explicit debug-only switch for wide-open CORS in non-prod envs
    CORS_ALLOW_ALL_ORIGINS: bool = False

    # llm
    OPENROUTER_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None
    LLM_MODEL: str = "openai/gpt-5.1"
    # Hard cap on concurrent LLM calls per process
    LLM_MAX_CONCURRENCY: int = 4
    LLM_MAX_TOKENS: int = 16384
    LLM_PRICEBOOK_JSON: str | None = None

    # market intelligence orchestration
    MI_CACHE_TTL_HOURS: int = 168
    MI_ITEM_TIMEOUT_SECONDS: float = 65
    MI_CALL_DELAY_SECONDS: float = 2
    MI_KEYWORD_DELAY_SECONDS: float = 3
    MI_REVIEW_STAGGER_SECONDS: float = 3
    MI_REVIEW_POLL_INTERVAL_SECONDS: float = 15
    MI_REVIEW_MAX_WAIT_SECONDS: float = 3600
    MI_REVIEW_SUCCESS_THRESHOLD: float = 0.75
    MI_REVIEW_SORT: str = "recent"
    MI_STALE_JOB_MINUTES: int = 90

    # data retention (in days)
    CACHE_RETENTION_DAYS: int = 30
    JOB_RETENTION_DAYS: int = 90

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
