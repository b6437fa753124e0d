from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import get_settings
from .core.logging import configure_logging
from .api.routes_market_intel import router as market_intel_router

configure_logging()
settings = get_settings()

app = FastAPI(title="Market Intelligence API")


def _split_origins(raw: str) -> list[str]:
    return [o.strip() for o in raw.split(",") if o.strip()]


# CORS:
# - In prod, FRONTEND_ORIGIN is required and we never fall back to "*".
# - In non-prod, "*" is used when CORS_ALLOW_ALL_ORIGINS=True or no origin is configured.
if settings.ENV.lower() == "prod":
    if not settings.FRONTEND_ORIGIN:
        raise RuntimeError(
            "FRONTEND_ORIGIN must be set in production; refusing to start with wide-open CORS."
        )
    origins = _split_origins(settings.FRONTEND_ORIGIN)
elif settings.CORS_ALLOW_ALL_ORIGINS or not settings.FRONTEND_ORIGIN:
    origins = ["*"]
else:
    origins = _split_origins(settings.FRONTEND_ORIGIN)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(market_intel_router, prefix=settings.API_PREFIX)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
