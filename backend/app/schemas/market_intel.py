# backend/app/schemas/market_intel.py
import re
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator

from ..models.market_intel_job import JobStatus

MAX_KEYWORDS = 10
MAX_KEYWORD_LEN = 200
MIN_COMPETITORS = 5
MAX_COMPETITORS = 20
MIN_REVIEWS_PER_PRODUCT = 10
MAX_REVIEWS_PER_PRODUCT = 1000
MAX_SELECTION = 50

_MARKETPLACE_RE = re.compile(r"^amazon\.[a-z]{2,3}(\.[a-z]{2})?$")
_ASIN_RE = re.compile(r"^[A-Z0-9]{10}$")


class MarketIntelRequest(BaseModel):
    keywords: list[str]
    marketplace: str = "amazon.com"
    max_competitors: int = 10
    reviews_per_product: int = 200
    requested_by: str | None = None

    @field_validator("keywords", mode="before")
    @classmethod
    def _single_keyword_to_list(cls, v):
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("keywords")
    @classmethod
    def validate_keywords(cls, v: list[str]) -> list[str]:
        cleaned: list[str] = []
        for raw in v:
            keyword = " ".join((raw or "").split()).lower()
            if not keyword:
                continue
            if len(keyword) > MAX_KEYWORD_LEN:
                raise ValueError(f"keywords must be at most {MAX_KEYWORD_LEN} characters each")
            if keyword not in cleaned:
                cleaned.append(keyword)
        if not cleaned:
            raise ValueError("at least one keyword is required")
        if len(cleaned) > MAX_KEYWORDS:
            raise ValueError(f"at most {MAX_KEYWORDS} keywords are allowed")
        return cleaned

    @field_validator("marketplace")
    @classmethod
    def validate_marketplace(cls, v: str) -> str:
        v = v.strip().lower()
        if v.startswith("www."):
            v = v[4:]
        if not _MARKETPLACE_RE.match(v):
            raise ValueError("marketplace must look like amazon.com or amazon.co.uk")
        return v

    @field_validator("max_competitors")
    @classmethod
    def clamp_max_competitors(cls, v: int) -> int:
        return max(MIN_COMPETITORS, min(MAX_COMPETITORS, v))

    @field_validator("reviews_per_product")
    @classmethod
    def validate_reviews_per_product(cls, v: int) -> int:
        if not MIN_REVIEWS_PER_PRODUCT <= v <= MAX_REVIEWS_PER_PRODUCT:
            raise ValueError(
                f"reviews_per_product must be between {MIN_REVIEWS_PER_PRODUCT} and {MAX_REVIEWS_PER_PRODUCT}"
            )
        return v

    @field_validator("requested_by", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        return v


class SelectionRequest(BaseModel):
    selected_asins: list[str]

    @field_validator("selected_asins")
    @classmethod
    def validate_selected_asins(cls, v: list[str]) -> list[str]:
        cleaned = list(dict.fromkeys(a.strip().upper() for a in v if a and a.strip()))
        if not cleaned:
            raise ValueError("select at least one product")
        if len(cleaned) > MAX_SELECTION:
            raise ValueError(f"at most {MAX_SELECTION} products can be selected")
        bad = [a for a in cleaned if not _ASIN_RE.match(a)]
        if bad:
            raise ValueError(f"invalid ASIN(s): {', '.join(bad)}")
        return cleaned


class JobProgress(BaseModel):
    step: str
    current: int = 0
    total: int = 0
    message: str = ""
    completed_phases: list[str] | None = None
    done: int | None = None
    failed: int | None = None
    remaining: int | None = None


class MarketIntelJobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    keywords: list[str]
    marketplace: str
    status: JobStatus
    progress: JobProgress | None = None
    error_message: str | None = None
    tokens_used: int = 0
    total_cost_usd: Decimal | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class MarketIntelJobOut(MarketIntelJobSummary):
    max_competitors: int
    reviews_per_product: int
    requested_by: str | None = None
    top_asins: list[str] | None = None
    competitors_data: list[dict[str, Any]] | None = None
    keyword_search_data: dict[str, Any] | None = None
    external_calls_used: int = 0
    selected_asins: list[str] | None = None
    reviews_data: dict[str, list[dict[str, Any]]] | None = None
    questions_data: dict[str, list[dict[str, Any]]] | None = None
    analysis_result: dict[str, Any] | None = None
    model_used: str | None = None
    llm_usage: dict[str, Any] | None = None


class TaskAccepted(BaseModel):
    job_id: UUID
    task_id: str
    status: JobStatus


class MarketIntelCreated(MarketIntelJobSummary):
    task_id: str
