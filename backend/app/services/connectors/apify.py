# backend/app/services/connectors/apify.py
from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, wait_exponential, stop_after_attempt, retry_if_exception_type

from ...core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

TERMINAL_STATUSES = frozenset({"SUCCEEDED", "FAILED", "TIMED-OUT", "ABORTED"})

_REVIEW_URL_ID_RE = re.compile(r"customer-reviews/([A-Z0-9]+)", re.IGNORECASE)
_TITLE_RATING_RE = re.compile(r"^(\d+(?:\.\d+)?)\s+out\s+of\s+\d+\s+stars?", re.IGNORECASE)
_LEADING_INT_RE = re.compile(r"^\s*(\d+)")


@dataclass
class ApifyRun:
    id: str
    status: str
    dataset_id: Optional[str] = None
    status_message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCEEDED"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ApifyRun":
        return cls(
            id=data.get("id") or "",
            status=data.get("status") or "UNKNOWN",
            dataset_id=data.get("defaultDatasetId"),
            status_message=data.get("statusMessage") or "",
        )


class ApifyError(RuntimeError):
    pass


class ApifyReviewsConnector:
    """
    Client for the async Apify Amazon-reviews actor.

    The actor is job based: ``start_run`` launches a run and returns its
    handle immediately, ``get_run`` reports status, ``fetch_dataset_items``
    downloads the results once the run has succeeded. Launches are billed and
    are not retried; status and dataset reads are idempotent and retried on
    transport errors.
    """

    name = "apify_reviews"

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        actor_id: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.token = token or settings.APIFY_API_TOKEN
        self.base_url = (base_url or settings.APIFY_BASE_URL).rstrip("/")
        self.actor_id = actor_id or settings.APIFY_ACTOR_ID
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            raise ApifyError("Apify API token not configured. Set APIFY_API_TOKEN.")
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    def _build_input(
        self, asin: str, marketplace: str, max_reviews: int, sort: str
    ) -> Dict[str, Any]:
        # The advanced filters default to five-star-only when omitted, so every
        # rating / verification / media option is sent explicitly.
        return {
            "ASIN_or_URL": [f"https://www.{marketplace}/dp/{asin}"],
            "sortBy": "helpful" if sort == "helpful" else "recent",
            "filterByRating": "allStars",
            "filter_by_ratings": [
                "five_star",
                "four_star",
                "three_star",
                "two_star",
                "one_star",
            ],
            "filter_by_verified_purchase_only": ["all_reviews", "avp_only_reviews"],
            "filter_by_mediaType": ["all_contents", "media_reviews_only"],
            "get_customers_say": True,
            "max_reviews": int(max_reviews),
        }

    async def start_run(
        self, asin: str, marketplace: str, max_reviews: int, sort: str = "recent"
    ) -> ApifyRun:
        payload = self._build_input(asin, marketplace, max_reviews, sort)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                f"{self.base_url}/acts/{self.actor_id}/runs",
                params={"waitForFinish": 0},
                headers=self._headers(),
                json=payload,
            )
        if resp.status_code >= 400:
            raise ApifyError(f"Apify API error ({resp.status_code}): {resp.text[:300]}")

        run = ApifyRun.from_api(resp.json().get("data") or {})
        logger.info(
            "Started Apify run %s (%s)",
            run.id,
            run.status,
            extra={"connector": self.name, "asin": asin},
        )
        return run

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(httpx.HTTPError),
        reraise=True,
    )
    async def get_run(self, run_id: str) -> ApifyRun:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(
                f"{self.base_url}/actor-runs/{run_id}",
                headers=self._headers(),
            )
            resp.raise_for_status()
        return ApifyRun.from_api(resp.json().get("data") or {})

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(httpx.HTTPError),
        reraise=True,
    )
    async def fetch_dataset_items(self, dataset_id: str) -> List[Dict[str, Any]]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(
                f"{self.base_url}/datasets/{dataset_id}/items",
                params={"format": "json", "clean": "true"},
                headers=self._headers(),
            )
            resp.raise_for_status()
        items = resp.json()
        return items if isinstance(items, list) else []


def _stable_hash(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:12]


def _parse_rating(score: Any, title: str) -> int:
    try:
        parsed = float(str(score))
    except (TypeError, ValueError):
        parsed = 0.0
    if 1 <= parsed <= 5:
        return round(parsed)

    match = _TITLE_RATING_RE.match(title or "")
    if match:
        return round(float(match.group(1)))
    return 0


def _parse_verified(value: Any) -> bool:
    if value is True:
        return True
    return str(value).strip().lower() in {"true", "verified purchase", "yes"}


def normalize_review(item: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map a raw actor item to the review shape used everywhere else.

    The actor returns scores and helpful counts as strings ("4.0",
    "3 people found this helpful") and variants as a list.
    """
    review_id = item.get("ReviewId") or ""
    if not review_id:
        match = _REVIEW_URL_ID_RE.search(item.get("PageUrl") or item.get("ReviewUrl") or "")
        if match:
            review_id = match.group(1)
    if not review_id:
        review_id = "apify-" + _stable_hash(
            f"{item.get('Reviewer')}-{item.get('ReviewTitle')}-{item.get('ReviewDate')}"
        )

    helpful_match = _LEADING_INT_RE.match(str(item.get("HelpfulCounts") or ""))
    variant = item.get("Variant")
    if isinstance(variant, list):
        variant = ", ".join(str(v) for v in variant)

    images = item.get("Images")
    images = list(dict.fromkeys(images)) if isinstance(images, list) else []

    return {
        "id": review_id,
        "title": item.get("ReviewTitle") or "",
        "author": item.get("Reviewer") or "",
        "rating": _parse_rating(item.get("ReviewScore"), item.get("ReviewTitle") or ""),
        "content": item.get("ReviewContent") or "",
        "timestamp": item.get("ReviewDate") or "",
        "is_verified": _parse_verified(item.get("Verified")),
        "helpful_count": int(helpful_match.group(1)) if helpful_match else 0,
        "product_attributes": variant or None,
        "images": images,
    }


def dedupe_reviews(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Normalise dataset items and drop duplicates by review id, keeping the first."""
    seen: set[str] = set()
    unique: List[Dict[str, Any]] = []
    for item in items:
        review = normalize_review(item)
        if review["id"] in seen:
            continue
        seen.add(review["id"])
        unique.append(review)
    return unique
