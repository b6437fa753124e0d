from sqlalchemy import Column, String, JSON, Enum, DateTime, Integer, Numeric, Uuid
from datetime import datetime
import uuid
import enum
from ..core.db import Base


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    COLLECTING = "collecting"
    AWAITING_SELECTION = "awaiting_selection"
    COLLECTED = "collected"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_STATUSES = frozenset(
    {
        JobStatus.PENDING,
        JobStatus.COLLECTING,
        JobStatus.AWAITING_SELECTION,
        JobStatus.COLLECTED,
        JobStatus.ANALYZING,
    }
)

# Queued for or held by a worker. AWAITING_SELECTION waits on the user instead.
RUNNING_STATUSES = frozenset(
    {
        JobStatus.PENDING,
        JobStatus.COLLECTING,
        JobStatus.COLLECTED,
        JobStatus.ANALYZING,
    }
)


class MarketIntelJob(Base):
    __tablename__ = "market_intel_jobs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # input
    keywords = Column(JSON, nullable=False)
    marketplace = Column(String, nullable=False)  # "amazon.com", "amazon.co.uk", ...
    max_competitors = Column(Integer, nullable=False, default=10)
    reviews_per_product = Column(Integer, nullable=False, default=200)
    requested_by = Column(String, nullable=True)

    # discovery
    top_asins = Column(JSON, nullable=True)
    competitors_data = Column(JSON, nullable=True)
    keyword_search_data = Column(JSON, nullable=True)
    external_calls_used = Column(Integer, nullable=False, default=0)

    # selection + enrichment
    selected_asins = Column(JSON, nullable=True)
    reviews_data = Column(JSON, nullable=True)    # {asin: [review, ...]}
    questions_data = Column(JSON, nullable=True)  # {asin: [question, ...]}

    # analysis
    phase_results = Column(JSON, nullable=True)   # {phase: {result, model, tokens_used, ...}}
    analysis_result = Column(JSON, nullable=True)
    model_used = Column(String, nullable=True)
    tokens_used = Column(Integer, nullable=False, default=0)
    llm_usage = Column(JSON, nullable=True)
    total_cost_usd = Column(Numeric(14, 6), nullable=True)

    # lifecycle
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.PENDING)
    progress = Column(JSON, nullable=True)  # {step, current, total, message, completed_phases?}
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)
