"""
Four-phase market analysis over collected marketplace data.

Phases run strictly in order and each only sees the outputs of the phases
before it:

    reviews  -> sentiment, pain points, motivations, per-product summaries
    qna      -> question themes, gaps, buyer concerns
    market   -> competitive landscape, patterns, segments
    strategy -> summary, avatars, recommendations, messaging

Each phase declares the top-level keys it owns. Anything else the model
returns is dropped so phase outputs stay disjoint and merge cleanly.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import textwrap
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..core.config import get_settings
from .llm import ChatResult, chat_completion

logger = logging.getLogger(__name__)

PHASES = ("reviews", "qna", "market", "strategy")

PHASE_KEYS: Dict[str, tuple] = {
    "reviews": (
        "sentimentAnalysis",
        "topPositiveThemes",
        "painPointsList",
        "featureRequestsList",
        "topPainPoints",
        "primaryMotivations",
        "buyingDecisionFactors",
        "perProductSummaries",
    ),
    "qna": (
        "topQuestions",
        "questionThemes",
        "unansweredGaps",
        "buyerConcerns",
        "contentGaps",
    ),
    "market": (
        "competitiveLandscape",
        "competitorPatterns",
        "customerSegments",
    ),
    "strategy": (
        "executiveSummary",
        "customerDemographics",
        "detailedAvatars",
        "imageRecommendations",
        "keyMarketInsights",
        "strategicRecommendations",
        "messagingFramework",
        "customerVoicePhrases",
    ),
}

PHASE_LABELS = {
    "reviews": "Analyzing reviews",
    "qna": "Analyzing Q&A data",
    "market": "Analyzing market and competition",
    "strategy": "Building strategy and avatars",
}

# Prompt size guards
MAX_SEARCH_RESULTS = 20
MAX_REVIEWS_PER_PRODUCT = 150
MAX_REVIEW_CHARS = 800
MAX_QUESTIONS_PER_PRODUCT = 60

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?|\n?```\s*$")


def strip_markdown_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and the trailing ``` if present."""
    return _FENCE_RE.sub("", (text or "").strip()).strip()


# ---------------------------------------------------------------------------
# Input assembly
# ---------------------------------------------------------------------------


def _organic_results(keyword_search_data: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    if not keyword_search_data:
        return []
    if isinstance(keyword_search_data.get("keywords"), list):
        merged: List[Dict[str, Any]] = []
        for snapshot in keyword_search_data["keywords"]:
            merged.extend(snapshot.get("organic_results") or [])
        return merged
    return list(keyword_search_data.get("organic_results") or [])


def _slim_review(review: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "rating": review.get("rating") or 0,
        "title": review.get("title") or "",
        "content": (review.get("content") or "")[:MAX_REVIEW_CHARS],
        "author": review.get("author") or "",
        "is_verified": bool(review.get("is_verified")),
        "helpful_count": review.get("helpful_count") or 0,
    }


def _slim_question(question: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "question": question.get("question") or "",
        "answer": question.get("answer") or "",
        "votes": question.get("votes") or 0,
    }


def _competitor_view(record: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "asin": record.get("asin"),
        "title": record.get("title") or "",
        "brand": record.get("brand") or "",
        "price": record.get("price"),
        "price_initial": record.get("price_initial"),
        "currency": record.get("currency") or "$",
        "rating": record.get("rating") or 0,
        "reviews_count": record.get("reviews_count") or 0,
        "bullet_points": record.get("bullet_points") or "",
        "description": record.get("description") or "",
        "product_overview": record.get("product_overview") or [],
        "is_prime_eligible": bool(record.get("is_prime_eligible")),
        "amazon_choice": bool(record.get("amazon_choice")),
        "deal_type": record.get("deal_type"),
        "coupon": record.get("coupon"),
        "sales_volume": record.get("sales_volume"),
        "sales_rank": record.get("sales_rank"),
        "reviews": [_slim_review(r) for r in (record.get("top_reviews") or [])],
    }


def _market_stats(competitors: List[Dict[str, Any]]) -> Dict[str, Any]:
    prices = [c["price"] for c in competitors if isinstance(c.get("price"), (int, float)) and c["price"] > 0]
    ratings = [c["rating"] for c in competitors if c.get("rating")]
    count = len(competitors)
    return {
        "avgPrice": sum(prices) / len(prices) if prices else 0,
        "minPrice": min(prices) if prices else 0,
        "maxPrice": max(prices) if prices else 0,
        "avgRating": sum(ratings) / len(ratings) if ratings else 0,
        "totalReviews": sum(c.get("reviews_count") or 0 for c in competitors),
        "primePercentage": (
            sum(1 for c in competitors if c["is_prime_eligible"]) / count * 100 if count else 0
        ),
        "amazonChoiceCount": sum(1 for c in competitors if c["amazon_choice"]),
        "currency": competitors[0]["currency"] if competitors else "$",
    }


def build_analysis_input(
    job: Any,
    selection: Iterable[str],
    reviews: Mapping[str, List[Dict[str, Any]]],
    questions: Mapping[str, List[Dict[str, Any]]],
) -> Dict[str, Any]:
    """
    Assemble the data object every phase prompt is built from.

    Only selected, non-error competitors are included; reviews and Q&A are
    restricted to the selection as well.
    """
    selected = list(dict.fromkeys(selection))
    selected_set = set(selected)
    keywords = list(job.keywords or [])

    competitors = [
        _competitor_view(record)
        for record in (job.competitors_data or [])
        if not record.get("error") and record.get("asin") in selected_set
    ]

    search_results = [
        {
            "pos": item.get("pos") or 0,
            "title": item.get("title") or "",
            "asin": item.get("asin") or "",
            "price": item.get("price"),
            "rating": item.get("rating"),
            "reviews_count": item.get("reviews_count"),
            "is_prime": bool(item.get("is_prime")),
            "sales_volume": item.get("sales_volume"),
        }
        for item in _organic_results(job.keyword_search_data)[:MAX_SEARCH_RESULTS]
    ]

    return {
        "keyword": ", ".join(keywords),
        "keywords": keywords,
        "marketplace": job.marketplace,
        "searchResults": search_results,
        "competitors": competitors,
        "reviewsData": {
            asin: [_slim_review(r) for r in (reviews.get(asin) or [])[:MAX_REVIEWS_PER_PRODUCT]]
            for asin in selected
            if asin in reviews
        },
        "questionsData": {
            asin: [_slim_question(q) for q in (questions.get(asin) or [])[:MAX_QUESTIONS_PER_PRODUCT]]
            for asin in selected
            if asin in questions
        },
        "marketStats": _market_stats(competitors),
    }


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """
You are a senior e-commerce market analyst. You study marketplace search
results, competitor listings, customer reviews and customer questions, and turn
them into evidence-backed findings for a brand preparing to launch or improve a
product.

RULES:
- Base every finding on the data provided. Do not invent products, brands,
  numbers or quotes.
- Quote customers verbatim where a phrase is requested.
- Return ONLY a single JSON object with exactly the keys requested. No prose,
  no markdown.
""".strip()


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


def _key_list(phase: str) -> str:
    return "\n".join(f"- {key}" for key in PHASE_KEYS[phase])


# Dedented before formatting; the substituted JSON keeps its own indentation.
REVIEWS_TEMPLATE = textwrap.dedent(
    """
    MARKET: "{keyword}" on {marketplace}

    PRODUCTS:
    {products}

    CUSTOMER REVIEWS BY ASIN:
    {reviews}

    TASK: Analyse the reviews across all products.
    - sentimentAnalysis: overall positive / neutral / negative percentages and a one-line read.
    - topPositiveThemes: recurring praise with mention counts and example quotes.
    - painPointsList: every distinct complaint with frequency and severity.
    - featureRequestsList: features customers ask for or wish existed.
    - topPainPoints: the 5 most damaging pain points, ranked, with evidence.
    - primaryMotivations: why people buy in this category.
    - buyingDecisionFactors: what tips the purchase decision, ranked.
    - perProductSummaries: one entry per ASIN with strengths, weaknesses and sentiment.

    Return a JSON object with exactly these keys:
    {keys}
    """
).strip()

QNA_TEMPLATE = textwrap.dedent(
    """
    MARKET: "{keyword}" on {marketplace}

    CUSTOMER QUESTIONS BY ASIN:
    {questions}

    REVIEW FINDINGS SO FAR:
    {review_summary}

    TASK: Analyse what shoppers ask before buying.
    - topQuestions: the most asked or most voted questions with the best available answer.
    - questionThemes: grouped themes with counts and sample questions.
    - unansweredGaps: questions with missing, vague or conflicting answers.
    - buyerConcerns: hesitations that could block a purchase, linked to review pain points where relevant.
    - contentGaps: information a listing should state up front, with priority.

    Return a JSON object with exactly these keys:
    {keys}
    """
).strip()

MARKET_TEMPLATE = textwrap.dedent(
    """
    MARKET: "{keyword}" on {marketplace}

    SEARCH LANDSCAPE (top organic results):
    {search_results}

    COMPETITOR LISTINGS:
    {competitors}

    MARKET STATS:
    {market_stats}

    REVIEW ANALYSIS:
    {reviews}

    Q&A ANALYSIS:
    {qna}

    TASK: Describe the competitive market.
    - competitiveLandscape: leaders, challengers, price tiers and how crowded the market is.
    - competitorPatterns: shared title, bullet, image and pricing patterns, including a pricingRange
      object with min, max, average, median and currency.
    - customerSegments: distinct buyer segments with size estimate, needs and which competitors serve them.

    Return a JSON object with exactly these keys:
    {keys}
    """
).strip()

STRATEGY_TEMPLATE = textwrap.dedent(
    """
    MARKET: "{keyword}" on {marketplace}

    MARKET STATS:
    {market_stats}

    REVIEW ANALYSIS:
    {reviews}

    Q&A ANALYSIS:
    {qna}

    MARKET ANALYSIS:
    {market}

    TASK: Turn the findings into a go-to-market strategy.
    - executiveSummary: a short paragraph a founder can act on.
    - customerDemographics: age, gender, income and lifestyle signals with evidence.
    - detailedAvatars: 2-4 named buyer personas with goals, frustrations and trigger phrases.
    - imageRecommendations: the listing image stack, one entry per image with purpose and content.
    - keyMarketInsights: the non-obvious insights, each with supporting evidence.
    - strategicRecommendations: prioritised actions with expected impact.
    - messagingFramework: primary message, support points, proof points and risk reversal.
    - customerVoicePhrases: verbatim customer phrases grouped by positive, functional and use-case language.

    Return a JSON object with exactly these keys:
    {keys}
    """
).strip()


def _reviews_prompt(data: Dict[str, Any], prior: Dict[str, Dict[str, Any]]) -> str:
    products = [
        {"asin": c["asin"], "title": c["title"], "brand": c["brand"], "rating": c["rating"]}
        for c in data["competitors"]
    ]
    return REVIEWS_TEMPLATE.format(
        keyword=data["keyword"],
        marketplace=data["marketplace"],
        products=_dump(products),
        reviews=_dump(data["reviewsData"]),
        keys=_key_list("reviews"),
    )


def _qna_prompt(data: Dict[str, Any], prior: Dict[str, Dict[str, Any]]) -> str:
    reviews = prior.get("reviews") or {}
    review_summary = {
        key: reviews.get(key)
        for key in ("sentimentAnalysis", "topPainPoints", "primaryMotivations", "perProductSummaries")
    }
    return QNA_TEMPLATE.format(
        keyword=data["keyword"],
        marketplace=data["marketplace"],
        questions=_dump(data["questionsData"]),
        review_summary=_dump(review_summary),
        keys=_key_list("qna"),
    )


def _market_prompt(data: Dict[str, Any], prior: Dict[str, Dict[str, Any]]) -> str:
    competitors = [{k: v for k, v in c.items() if k != "reviews"} for c in data["competitors"]]
    return MARKET_TEMPLATE.format(
        keyword=data["keyword"],
        marketplace=data["marketplace"],
        search_results=_dump(data["searchResults"]),
        competitors=_dump(competitors),
        market_stats=_dump(data["marketStats"]),
        reviews=_dump(prior.get("reviews") or {}),
        qna=_dump(prior.get("qna") or {}),
        keys=_key_list("market"),
    )


def _strategy_prompt(data: Dict[str, Any], prior: Dict[str, Dict[str, Any]]) -> str:
    return STRATEGY_TEMPLATE.format(
        keyword=data["keyword"],
        marketplace=data["marketplace"],
        market_stats=_dump(data["marketStats"]),
        reviews=_dump(prior.get("reviews") or {}),
        qna=_dump(prior.get("qna") or {}),
        market=_dump(prior.get("market") or {}),
        keys=_key_list("strategy"),
    )


PROMPT_BUILDERS: Dict[str, Callable[[Dict[str, Any], Dict[str, Dict[str, Any]]], str]] = {
    "reviews": _reviews_prompt,
    "qna": _qna_prompt,
    "market": _market_prompt,
    "strategy": _strategy_prompt,
}


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


@dataclass
class PhaseOutput:
    result: Dict[str, Any]
    model: str
    tokens_used: int
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    reasoning_output_tokens: int = 0

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)


def filter_phase_keys(phase: str, result: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = PHASE_KEYS[phase]
    dropped = sorted(k for k in result if k not in allowed)
    if dropped:
        logger.warning(
            "Dropping undeclared keys from %s phase output: %s",
            phase,
            ", ".join(dropped),
            extra={"step": f"phase_{phase}"},
        )
    return {k: result[k] for k in allowed if k in result}


def merge_phase_results(phase_results: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Union the per-phase outputs in phase order into the final result."""
    merged: Dict[str, Any] = {}
    for phase in PHASES:
        entry = phase_results.get(phase)
        if entry:
            merged.update(entry.get("result") or {})
    return merged


class MarketAnalyzer:
    """
    Runs one analysis phase per call against the configured chat model.

    ``completion`` is the blocking chat call; it is executed in a worker
    thread so the event loop stays free.
    """

    def __init__(
        self,
        model: str | None = None,
        max_tokens: int | None = None,
        completion: Callable[..., ChatResult] = chat_completion,
    ) -> None:
        settings = get_settings()
        self.model = model or settings.LLM_MODEL
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        self.provider = "openrouter" if settings.OPENROUTER_API_KEY else "openai"
        self._completion = completion

    async def run_phase(
        self,
        phase: str,
        data: Dict[str, Any],
        prior: Dict[str, Dict[str, Any]],
    ) -> PhaseOutput:
        if phase not in PROMPT_BUILDERS:
            raise ValueError(f"Unknown analysis phase: {phase}")

        user_prompt = PROMPT_BUILDERS[phase](data, prior)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ]

        chat = await asyncio.to_thread(
            self._completion,
            messages,
            model=self.model,
            max_tokens=self.max_tokens,
        )

        text = strip_markdown_fences(chat.text)
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Phase {phase} returned invalid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ValueError(f"Phase {phase} returned {type(parsed).__name__}, expected an object")

        logger.info(
            "Phase %s complete (%d tokens)",
            phase,
            chat.total_tokens,
            extra={"step": f"phase_{phase}"},
        )
        return PhaseOutput(
            result=filter_phase_keys(phase, parsed),
            model=chat.model,
            tokens_used=chat.total_tokens,
            input_tokens=chat.input_tokens,
            output_tokens=chat.output_tokens,
            cached_input_tokens=chat.cached_input_tokens,
            reasoning_output_tokens=chat.reasoning_output_tokens,
        )
