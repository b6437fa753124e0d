from __future__ import annotations

from dataclasses import dataclass

from .base import BaseConnector, ConnectorResult
from .oxylabs import AmazonSearchConnector, AmazonProductConnector, AmazonQuestionsConnector
from .apify import ApifyReviewsConnector


@dataclass
class MarketConnectors:
    """
    Registry of the external services the orchestrator talks to.

    - search:    keyword -> organic/sponsored results
    - product:   asin -> product detail page
    - questions: asin -> customer Q&A
    - reviews:   async review-collection runs

    Tests swap any member for a fake with the same call signature.
    """

    search: BaseConnector
    product: BaseConnector
    questions: BaseConnector
    reviews: ApifyReviewsConnector


def get_connectors() -> MarketConnectors:
    return MarketConnectors(
        search=AmazonSearchConnector(),
        product=AmazonProductConnector(),
        questions=AmazonQuestionsConnector(),
        reviews=ApifyReviewsConnector(),
    )


__all__ = [
    "BaseConnector",
    "ConnectorResult",
    "MarketConnectors",
    "get_connectors",
]
