"""Deterministic rule tier: modal-verb, keyword and numeric change signals.

The rule check runs for every comparison before the semantic oracle is
consulted. Its signals are merged into model results and are the sole input
of fallback and rule-only results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .cues.grammar import Modality, Quantity, detect_modals, extract_quantities, keyword_counts
from .models_vcc import (
    ChangeType,
    NumericChange,
    ObligationChange,
    ResolvedAlignment,
    RiskLevel,
    max_risk,
)

# Fields whose every change is treated as high significance.
HIGH_SIGNIFICANCE_FIELDS = {"retention_period"}
# Fields where a relative change above MATERIAL_PCT is high significance.
MONETARY_FIELDS = {"monetary_limit", "penalty_amount"}
MATERIAL_PCT = 0.25

# Keywords whose appearance in the new text escalates to high risk.
ESCALATING_KEYWORDS = {"prohibited", "penalty", "fine"}

_OBLIGATION_LEVELS = {Modality.MANDATORY, Modality.PROHIBITED}
_PERMISSION_LEVELS = {Modality.PERMISSIVE, Modality.ADVISORY}


@dataclass
class RuleSignals:
    """Output of the rule check for one alignment."""

    obligation_changes: List[ObligationChange] = field(default_factory=list)
    permission_changes: List[ObligationChange] = field(default_factory=list)
    numeric_changes: List[NumericChange] = field(default_factory=list)
    keyword_deltas: Dict[str, int] = field(default_factory=dict)
    flags: List[str] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW

    @property
    def obligation_reversal(self) -> bool:
        return "obligation_reversal" in self.flags

    def hint(self) -> Dict[str, object]:
        """Compact form embedded in the oracle prompt context."""

        return {
            "flags": list(self.flags),
            "risk_level": self.risk_level.value,
            "keyword_deltas": dict(self.keyword_deltas),
            "numeric_changes": [change.model_dump(mode="json") for change in self.numeric_changes],
            "obligation_changes": [change.model_dump(mode="json") for change in self.obligation_changes],
        }


def _modal_severity(old: Optional[Modality], new: Optional[Modality]) -> RiskLevel:
    if old in _PERMISSION_LEVELS and new == Modality.MANDATORY:
        return RiskLevel.HIGH
    if {old, new} == {Modality.MANDATORY, Modality.PROHIBITED}:
        return RiskLevel.HIGH
    if new == Modality.PROHIBITED:
        return RiskLevel.HIGH
    if old is None or new is None:
        return RiskLevel.MEDIUM
    if old in _OBLIGATION_LEVELS or new in _OBLIGATION_LEVELS:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def diff_modals(old_text: str, new_text: str, signals: RuleSignals) -> None:
    old_modals = {statement.entity: statement for statement in detect_modals(old_text)}
    new_modals = {statement.entity: statement for statement in detect_modals(new_text)}
    for entity in sorted(set(old_modals) | set(new_modals)):
        old = old_modals.get(entity)
        new = new_modals.get(entity)
        old_level = old.modality if old else None
        new_level = new.modality if new else None
        if old_level == new_level:
            continue
        change = ObligationChange(
            entity=entity,
            old_obligation=old.phrase if old else None,
            new_obligation=new.phrase if new else None,
            severity=_modal_severity(old_level, new_level),
        )
        if old_level in _OBLIGATION_LEVELS or new_level in _OBLIGATION_LEVELS:
            signals.obligation_changes.append(change)
            if (old_level or 0) < (new_level or 0):
                signals.flags.append(f"obligation_increase:{entity}:{change.old_obligation}->{change.new_obligation}")
            else:
                signals.flags.append(f"obligation_decrease:{entity}:{change.old_obligation}->{change.new_obligation}")
            if old_level in _PERMISSION_LEVELS and new_level == Modality.MANDATORY:
                if "obligation_reversal" not in signals.flags:
                    signals.flags.append("obligation_reversal")
        else:
            signals.permission_changes.append(change)


def _to_days(quantity: Quantity) -> Optional[float]:
    unit = quantity.unit.rstrip("s")
    factors = {"day": 1.0, "week": 7.0, "month": 30.0, "year": 365.0}
    if unit in factors:
        return quantity.value * factors[unit]
    return None


def _significance(field_name: str, old: Optional[Quantity], new: Optional[Quantity]) -> RiskLevel:
    if field_name in HIGH_SIGNIFICANCE_FIELDS:
        return RiskLevel.HIGH
    if old is None or new is None:
        return RiskLevel.HIGH if field_name in MONETARY_FIELDS else RiskLevel.MEDIUM
    base = _to_days(old) or old.value
    target = _to_days(new) or new.value
    pct = abs(target - base) / base if base else 1.0
    if field_name in MONETARY_FIELDS:
        return RiskLevel.HIGH if pct >= MATERIAL_PCT else RiskLevel.MEDIUM
    return RiskLevel.MEDIUM if pct >= MATERIAL_PCT else RiskLevel.LOW


def _same_quantity(old: Quantity, new: Quantity) -> bool:
    if old.unit == new.unit:
        return old.value == new.value
    old_days, new_days = _to_days(old), _to_days(new)
    return old_days is not None and old_days == new_days


def diff_quantities(old_text: str, new_text: str, signals: RuleSignals) -> None:
    by_field_old: Dict[str, List[Quantity]] = {}
    by_field_new: Dict[str, List[Quantity]] = {}
    for quantity in extract_quantities(old_text):
        by_field_old.setdefault(quantity.field, []).append(quantity)
    for quantity in extract_quantities(new_text):
        by_field_new.setdefault(quantity.field, []).append(quantity)

    for field_name in sorted(set(by_field_old) | set(by_field_new)):
        olds = by_field_old.get(field_name, [])
        news = by_field_new.get(field_name, [])
        for index in range(max(len(olds), len(news))):
            old = olds[index] if index < len(olds) else None
            new = news[index] if index < len(news) else None
            if old is not None and new is not None and _same_quantity(old, new):
                continue
            unit = (new or old).unit  # type: ignore[union-attr]
            old_value = old.value if old else None
            new_value = new.value if new else None
            if old is not None and new is not None and old.unit != new.unit:
                old_days, new_days = _to_days(old), _to_days(new)
                if old_days is not None and new_days is not None:
                    old_value, new_value, unit = old_days, new_days, "days"
            significance = _significance(field_name, old, new)
            signals.numeric_changes.append(
                NumericChange(
                    field=field_name,
                    old_value=old_value,
                    new_value=new_value,
                    significance=significance,
                    unit=unit,
                )
            )
            signals.flags.append(f"numeric_delta:{field_name}:{_fmt(old_value)}->{_fmt(new_value)}")


def _fmt(value: Optional[float]) -> str:
    if value is None:
        return "none"
    return f"{value:g}"


def diff_keywords(old_text: str, new_text: str, keywords: Sequence[str], signals: RuleSignals) -> None:
    old_counts = keyword_counts(old_text, keywords)
    new_counts = keyword_counts(new_text, keywords)
    for keyword in keywords:
        delta = new_counts.get(keyword, 0) - old_counts.get(keyword, 0)
        if delta:
            signals.keyword_deltas[keyword] = delta
            signals.flags.append(f"keyword_{'added' if delta > 0 else 'removed'}:{keyword}")


def _rule_risk(signals: RuleSignals) -> RiskLevel:
    levels = [change.severity for change in signals.obligation_changes]
    levels += [change.severity for change in signals.permission_changes]
    levels += [change.significance for change in signals.numeric_changes]
    for keyword, delta in signals.keyword_deltas.items():
        if delta > 0 and keyword in ESCALATING_KEYWORDS:
            levels.append(RiskLevel.HIGH)
        else:
            levels.append(RiskLevel.MEDIUM)
    return max_risk(*levels) if levels else RiskLevel.LOW


def run_rule_check(
    old_text: str,
    new_text: str,
    critical_keywords: Sequence[str],
) -> RuleSignals:
    """Run every deterministic rule over an old/new text pair."""

    signals = RuleSignals()
    diff_modals(old_text, new_text, signals)
    diff_quantities(old_text, new_text, signals)
    diff_keywords(old_text, new_text, critical_keywords, signals)
    signals.risk_level = _rule_risk(signals)
    return signals


def describe(alignment: ResolvedAlignment, signals: RuleSignals) -> str:
    """Neutral one-paragraph description built only from rule signals."""

    old_ref = ", ".join(alignment.old_clause_ids) or "-"
    new_ref = ", ".join(alignment.new_clause_ids) or "-"
    change = alignment.change_type
    if change == ChangeType.ADDED:
        lead = f"Clause {new_ref} was added."
    elif change == ChangeType.REMOVED:
        lead = f"Clause {old_ref} was removed."
    elif change == ChangeType.MERGED:
        lead = f"Clauses {old_ref} were merged into {new_ref}."
    elif change == ChangeType.SPLIT:
        lead = f"Clause {old_ref} was split into {new_ref}."
    elif change == ChangeType.RELOCATED:
        lead = f"Clause {old_ref} was moved to {new_ref} without wording changes."
    else:
        lead = f"Clause {old_ref} was modified as {new_ref}."

    parts: List[str] = []
    for obligation in signals.obligation_changes:
        parts.append(
            f"obligation for {obligation.entity} changed from "
            f"{obligation.old_obligation or 'none'} to {obligation.new_obligation or 'none'}"
        )
    for permission in signals.permission_changes:
        parts.append(
            f"permission for {permission.entity} changed from "
            f"{permission.old_obligation or 'none'} to {permission.new_obligation or 'none'}"
        )
    for numeric in signals.numeric_changes:
        unit = f" {numeric.unit}" if numeric.unit else ""
        parts.append(
            f"{numeric.field.replace('_', ' ')} changed from {_fmt(numeric.old_value)} to {_fmt(numeric.new_value)}{unit}"
        )
    if not parts:
        return lead
    return f"{lead} Detected: {'; '.join(parts)}."
