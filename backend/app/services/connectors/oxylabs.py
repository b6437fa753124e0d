# backend/app/services/connectors/oxylabs.py
from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

from .base import BaseConnector, ConnectorResult
from ...core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def oxylabs_domain(marketplace: str) -> str:
    """'amazon.co.uk' -> 'co.uk' (Oxylabs wants the bare TLD part)."""
    domain = (marketplace or "").strip().lower()
    if domain.startswith("www."):
        domain = domain[4:]
    if domain.startswith("amazon."):
        domain = domain[len("amazon."):]
    return domain or "com"


class OxylabsConnector(BaseConnector):
    """
    Shared transport for Oxylabs' realtime Amazon sources.

    Every source is a single ``POST /queries`` with ``parse: true``; the parsed
    page lives at ``results[0].content``. Failures are returned as
    ``ConnectorResult.failed`` rather than raised, and never retried here:
    each call is billed, so the orchestrator decides what to do with a miss.
    """

    name = "oxylabs"
    source: str = ""

    def __init__(
        self,
        username: str | None = None,
        password: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.username = username or settings.OXYLABS_USERNAME
        self.password = password or settings.OXYLABS_PASSWORD
        self.base_url = (base_url or settings.OXYLABS_BASE_URL).rstrip("/")
        self.timeout = timeout

    def _auth(self) -> httpx.BasicAuth:
        if not self.username or not self.password:
            raise RuntimeError(
                "Oxylabs credentials not configured. Set OXYLABS_USERNAME and OXYLABS_PASSWORD."
            )
        return httpx.BasicAuth(self.username, self.password)

    async def _query(self, query: str, marketplace: str, **extra: Any) -> ConnectorResult:
        payload: Dict[str, Any] = {
            "source": self.source,
            "domain": oxylabs_domain(marketplace),
            "query": query,
            "parse": True,
            **extra,
        }

        async with httpx.AsyncClient(timeout=self.timeout, auth=self._auth()) as client:
            try:
                resp = await client.post(f"{self.base_url}/queries", json=payload)
            except httpx.HTTPError as e:
                logger.warning(
                    "Oxylabs %s request failed: %s",
                    self.source,
                    e,
                    extra={"connector": self.name},
                )
                return ConnectorResult.failed(f"Oxylabs request failed: {e}")

        if resp.status_code >= 400:
            return ConnectorResult.failed(
                f"Oxylabs API error ({resp.status_code}): {resp.text[:300]}"
            )

        body = resp.json()
        results = body.get("results") or []
        content = results[0].get("content") if results else None
        if not content:
            return ConnectorResult.failed(f"No {self.source} content returned from Oxylabs")
        return ConnectorResult.ok(content)


class AmazonSearchConnector(OxylabsConnector):
    name = "oxylabs_search"
    source = "amazon_search"

    async def fetch(self, **kwargs: Any) -> ConnectorResult:
        """
        Expected kwargs: keyword, marketplace, page (default 1).

        ``data`` keeps the provider shape with a normalised ``results`` block:
        organic / paid / amazons_choices / suggested lists and
        ``total_results_count``.
        """
        keyword = (kwargs.get("keyword") or "").strip()
        if not keyword:
            return ConnectorResult.failed("keyword is required")

        res = await self._query(
            keyword,
            kwargs.get("marketplace") or "amazon.com",
            start_page=int(kwargs.get("page") or 1),
            pages=1,
        )
        if not res.success:
            return res

        content = res.data
        results = content.get("results") or {}
        return ConnectorResult.ok(
            {
                "organic": results.get("organic") or [],
                "paid": results.get("paid") or [],
                "amazons_choices": results.get("amazons_choices") or [],
                "suggested": results.get("suggested") or [],
                "total_results_count": content.get("total_results_count") or 0,
            }
        )


class AmazonProductConnector(OxylabsConnector):
    name = "oxylabs_product"
    source = "amazon_product"

    async def fetch(self, **kwargs: Any) -> ConnectorResult:
        """Expected kwargs: asin, marketplace. ``data`` is the parsed product page."""
        asin = (kwargs.get("asin") or "").strip()
        if not asin:
            return ConnectorResult.failed("asin is required")
        return await self._query(asin, kwargs.get("marketplace") or "amazon.com")


class AmazonQuestionsConnector(OxylabsConnector):
    name = "oxylabs_questions"
    source = "amazon_questions"

    async def fetch(self, **kwargs: Any) -> ConnectorResult:
        """Expected kwargs: asin, marketplace, page. ``data`` is the question list."""
        asin = (kwargs.get("asin") or "").strip()
        if not asin:
            return ConnectorResult.failed("asin is required")

        res = await self._query(
            asin,
            kwargs.get("marketplace") or "amazon.com",
            start_page=int(kwargs.get("page") or 1),
            pages=1,
        )
        if not res.success:
            return res

        questions = res.data.get("questions")
        if questions is None:
            return ConnectorResult.failed("No Q&A data returned from Oxylabs")
        return ConnectorResult.ok(questions)
