"""
Variant deduplication for discovered competitor products.

Amazon search results routinely surface several colour/size variants of the
same listing. Left alone they crowd distinct brands out of a fixed-size
competitor set, so variants sharing a ``parent_asin`` collapse to the single
best-selling child.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

_SALES_VOLUME_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([kK])?\s*\+?")


def parse_sales_volume(text: str | None) -> int:
    """
    Turn Amazon's free-text sales badge into a comparable number.

        "10K+ bought in past month" -> 10000
        "800+ bought"               -> 800
        "1,200 sold"                -> 1200
        "New"                       -> 0
    """
    if not text:
        return 0
    match = _SALES_VOLUME_RE.search(str(text).replace(",", ""))
    if not match:
        return 0
    value = float(match.group(1))
    if match.group(2):
        value *= 1000
    return int(value)


def _is_error(record: Dict[str, Any]) -> bool:
    return bool(record.get("error"))


def _pick_representative(candidates: List[Dict[str, Any]]) -> Dict[str, Any]:
    if len(candidates) == 1:
        return candidates[0]

    usable = [c for c in candidates if not _is_error(c)]
    if not usable:
        # Keep one error marker so discovery failures are still reported
        return candidates[0]

    best = usable[0]
    best_score = parse_sales_volume(best.get("sales_volume"))
    for candidate in usable[1:]:
        score = parse_sales_volume(candidate.get("sales_volume"))
        # strict '>' so ties keep the first candidate encountered
        if score > best_score:
            best, best_score = candidate, score
    return best


def dedupe_variants(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Collapse parent/child variants to one representative per parent.

    Records without a ``parent_asin`` are standalone. When a parent's own ASIN
    was also discovered as a standalone record it joins its children's
    candidate set instead of being emitted separately. Output order follows
    the first appearance of each group or standalone record.
    """
    groups: Dict[str, List[Dict[str, Any]]] = {}
    standalone: Dict[str, Dict[str, Any]] = {}
    order: List[tuple[str, str]] = []

    for record in records:
        asin = record.get("asin") or ""
        parent = record.get("parent_asin")
        if parent and parent != asin:
            if parent not in groups:
                groups[parent] = []
                order.append(("group", parent))
            groups[parent].append(record)
        elif asin not in standalone:
            standalone[asin] = record
            order.append(("standalone", asin))

    consumed: set[str] = set()
    for parent, members in groups.items():
        parent_record = standalone.get(parent)
        if parent_record is not None:
            members.insert(0, parent_record)
            consumed.add(parent)

    deduped: List[Dict[str, Any]] = []
    for slot_type, key in order:
        if slot_type == "group":
            deduped.append(_pick_representative(groups[key]))
        elif key not in consumed:
            deduped.append(standalone[key])

    if len(deduped) < len(records):
        logger.info(
            "Collapsed %d discovered products to %d after variant dedup",
            len(records),
            len(deduped),
            extra={"step": "dedup"},
        )
    return deduped
