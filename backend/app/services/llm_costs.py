from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelRate:
    input_per_mtok: float
    output_per_mtok: float
    cached_input_per_mtok: Optional[float] = None


def _build_default_pricebook() -> Dict[str, ModelRate]:
    # USD per 1M tokens.
    return {
        "gpt-5.1": ModelRate(
            input_per_mtok=1.250,
            output_per_mtok=10.000,
            cached_input_per_mtok=0.125,
        ),
        "gpt-5-mini": ModelRate(
            input_per_mtok=0.250,
            output_per_mtok=2.000,
            cached_input_per_mtok=0.025,
        ),
        "claude-sonnet-4": ModelRate(
            input_per_mtok=3.000,
            output_per_mtok=15.000,
            cached_input_per_mtok=0.300,
        ),
    }


def _load_pricebook() -> Dict[str, ModelRate]:
    settings = get_settings()
    pricebook = _build_default_pricebook()
    override_raw = settings.LLM_PRICEBOOK_JSON
    if not override_raw:
        return pricebook

    try:
        override = json.loads(override_raw)
    except json.JSONDecodeError:
        logger.warning("LLM_PRICEBOOK_JSON is not valid JSON; using default prices")
        return pricebook

    if not isinstance(override, dict):
        return pricebook

    for key, value in override.items():
        if not isinstance(value, dict):
            continue
        try:
            pricebook[key.strip().lower()] = ModelRate(
                input_per_mtok=float(value["input_per_mtok"]),
                output_per_mtok=float(value["output_per_mtok"]),
                cached_input_per_mtok=float(value.get("cached_input_per_mtok"))
                if value.get("cached_input_per_mtok") is not None
                else None,
            )
        except (KeyError, ValueError, TypeError):
            continue
    return pricebook


_PRICEBOOK: Dict[str, ModelRate] = _load_pricebook()


def normalize_model_name(model: str | None) -> str:
    """'openai/gpt-5.1:online' -> 'gpt-5.1'."""
    m = (model or "").strip().lower()
    if "/" in m:
        m = m.split("/")[-1]
    if ":" in m:
        m = m.split(":")[0]
    return m


def cost_for_tokens(
    model: str | None,
    input_tokens: int,
    output_tokens: int,
    cached_input_tokens: int = 0,
) -> float:
    rate = _PRICEBOOK.get(normalize_model_name(model))
    if not rate:
        return 0.0

    paid_input = max(0, int(input_tokens) - max(0, int(cached_input_tokens)))
    cached_input = max(0, int(cached_input_tokens))
    output = max(0, int(output_tokens))

    total = 0.0
    total += (paid_input / 1_000_000) * rate.input_per_mtok
    total += (output / 1_000_000) * rate.output_per_mtok
    if cached_input:
        cached_rate = rate.cached_input_per_mtok or rate.input_per_mtok
        total += (cached_input / 1_000_000) * cached_rate
    return total


class LLMCostTracker:
    """
    Per-job ledger of LLM calls, one record per analysis phase.

    ``summarize`` groups calls by provider and totals tokens and cost; the
    result is stored on the job as ``llm_usage``.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._lock = threading.Lock()
        self._records: List[Dict[str, Any]] = []

    def add_record(
        self,
        provider: str,
        model: str | None,
        kind: str,
        *,
        phase: str | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cached_input_tokens: int = 0,
        reasoning_output_tokens: int = 0,
        cost_usd: float | None = None,
    ) -> None:
        if cost_usd is None:
            cost_usd = cost_for_tokens(model, input_tokens, output_tokens, cached_input_tokens)
        record = {
            "provider": provider or "unknown",
            "model": model or "",
            "kind": kind,
            "phase": phase,
            "input_tokens": int(input_tokens or 0),
            "output_tokens": int(output_tokens or 0),
            "cached_input_tokens": int(cached_input_tokens or 0),
            "reasoning_output_tokens": int(reasoning_output_tokens or 0),
            "cost_usd": float(cost_usd),
        }
        with self._lock:
            self._records.append(record)

    @classmethod
    def from_phase_results(
        cls, job_id: str, phase_results: Dict[str, Dict[str, Any]], provider: str
    ) -> "LLMCostTracker":
        """Rebuild the ledger from persisted per-phase outputs (survives resume)."""
        tracker = cls(job_id)
        for phase, entry in phase_results.items():
            tracker.add_record(
                provider,
                entry.get("model"),
                "market_analysis",
                phase=phase,
                input_tokens=entry.get("input_tokens") or 0,
                output_tokens=entry.get("output_tokens") or 0,
                cached_input_tokens=entry.get("cached_input_tokens") or 0,
                reasoning_output_tokens=entry.get("reasoning_output_tokens") or 0,
            )
        return tracker

    def summarize(self) -> dict:
        providers: Dict[str, Dict[str, Any]] = {}
        total_cost = 0.0

        with self._lock:
            records_snapshot = list(self._records)

        for rec in records_snapshot:
            provider_entry = providers.setdefault(
                rec["provider"],
                {
                    "model": rec["model"],
                    "cost_usd": 0.0,
                    "totals": {
                        "input": 0,
                        "output": 0,
                        "cached_input": 0,
                        "reasoning_output": 0,
                    },
                    "calls": [],
                },
            )

            provider_entry["model"] = provider_entry.get("model") or rec["model"]
            provider_entry["totals"]["input"] += rec["input_tokens"]
            provider_entry["totals"]["output"] += rec["output_tokens"]
            provider_entry["totals"]["cached_input"] += rec["cached_input_tokens"]
            provider_entry["totals"]["reasoning_output"] += rec["reasoning_output_tokens"]
            provider_entry["cost_usd"] += rec["cost_usd"]
            total_cost += rec["cost_usd"]

            provider_entry["calls"].append(
                {
                    "kind": rec["kind"],
                    "phase": rec["phase"],
                    "model": rec["model"],
                    "input": rec["input_tokens"],
                    "output": rec["output_tokens"],
                    "cached_input": rec["cached_input_tokens"],
                    "reasoning_output": rec["reasoning_output_tokens"],
                    "cost_usd": rec["cost_usd"],
                }
            )

        return {
            "providers": providers,
            "total_cost_usd": total_cost,
        }
