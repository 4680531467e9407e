"""Generate factual summaries for comparison reports."""

from __future__ import annotations

from typing import Any, Dict, List

from .models_vcc import RISK_ORDER, ChangeType, MatchEntry, ReviewState, RiskLevel

MAX_BULLETS = 5


def _clause_ref(entry: MatchEntry) -> str:
    alignment = entry.alignment
    old_ref = ", ".join(alignment.old_clause_ids)
    new_ref = ", ".join(alignment.new_clause_ids)
    if old_ref and new_ref:
        return f"{old_ref} -> {new_ref}"
    return new_ref or old_ref or "unknown"


def summarise_matches(matches: List[MatchEntry]) -> List[str]:
    """Return a list of neutral bullet summaries."""

    bullets: List[str] = []
    prioritized = [entry for entry in matches if entry.result is not None]
    prioritized.sort(
        key=lambda entry: (
            -RISK_ORDER[entry.result.risk_level],
            entry.result.confidence,
            entry.alignment.sort_key(),
        )
    )

    for entry in prioritized[:MAX_BULLETS]:
        result = entry.result
        review_note = ""
        if result.review_state == ReviewState.HUMAN_REVIEW_REQUIRED:
            review_note = "; needs review"
        flags = f"; signals {', '.join(result.rule_flags[:3])}" if result.rule_flags else ""
        bullets.append(
            f"{result.change_type.value.title()} clause {_clause_ref(entry)}; "
            f"{result.risk_level.value} risk, confidence {result.confidence:.2f}"
            f" ({result.provenance.source.value}){flags}{review_note}"
        )

    if not bullets:
        bullets.append("No material clause changes detected")
    return bullets


def summary_counts(matches: List[MatchEntry]) -> Dict[str, Any]:
    """Tally change types, review states and risk levels of a match list."""

    counts: Dict[str, Any] = {f"total_{change.value}": 0 for change in ChangeType}
    review: Dict[str, int] = {state.value: 0 for state in ReviewState}
    risk: Dict[str, int] = {level.value: 0 for level in RiskLevel}
    for entry in matches:
        counts[f"total_{entry.change_type.value}"] += 1
        if entry.result is not None:
            review[entry.result.review_state.value] += 1
            risk[entry.result.risk_level.value] += 1
    counts["review_states"] = review
    counts["risk_levels"] = risk
    counts["requires_review"] = review[ReviewState.HUMAN_REVIEW_REQUIRED.value]
    return counts
