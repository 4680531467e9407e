"""Guardrail validation for structured comparison output.

Validation is independent of where a result came from: oracle responses,
fallback payloads and API submissions all pass through :func:`validate`.
Checks run in a fixed order and the first failing stage determines the
outcome:

1. required fields present with the right types
2. enum membership for ``change_type``, ``risk_level`` and entry levels
3. ``confidence`` within [0, 1]
4. content policy (legal-advice phrasing, unredacted PII)
"""

from __future__ import annotations

import copy
import math
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import regex as re
from pydantic import BaseModel, Field

from .errors import ContentViolation, SchemaViolation
from .models_vcc import ChangeType, RiskLevel

REQUIRED_FIELDS: Dict[str, Tuple[type, ...]] = {
    "change_type": (str,),
    "obligation_changes": (list,),
    "permission_changes": (list,),
    "numeric_changes": (list,),
    "risk_level": (str,),
    "human_summary": (str,),
    "confidence": (int, float),
}

OBLIGATION_ENTRY_FIELDS: Dict[str, Tuple[type, ...]] = {
    "entity": (str,),
    "old_obligation": (str, type(None)),
    "new_obligation": (str, type(None)),
    "severity": (str,),
}

NUMERIC_ENTRY_FIELDS: Dict[str, Tuple[type, ...]] = {
    "field": (str,),
    "old_value": (int, float, type(None)),
    "new_value": (int, float, type(None)),
    "significance": (str,),
}

ADVICE_PATTERNS = [
    re.compile(r"\b(?:you|the client|your client)\s+(?:should|must|ought to)\s+(?:sign|accept|reject|sue|refuse|not sign)\b", re.IGNORECASE),
    re.compile(r"\bwe (?:advise|recommend)\b", re.IGNORECASE),
    re.compile(r"\bI (?:advise|recommend)\b"),
    re.compile(r"\b(?:this|it) (?:is|constitutes) legal advice\b", re.IGNORECASE),
    re.compile(r"\bmy legal (?:advice|opinion)\b", re.IGNORECASE),
    re.compile(r"\byou (?:have|will have) a (?:strong|valid|good) (?:case|claim)\b", re.IGNORECASE),
]

PII_PATTERNS: Dict[str, re.Pattern[str]] = {
    "email": re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b"),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "card_number": re.compile(r"\b(?:\d[ -]?){13,16}\b"),
    "phone": re.compile(r"(?<!\w)\+?\d{1,3}[ .-]?\(?\d{3}\)?[ .-]\d{3}[ .-]\d{4}\b"),
}


class OutcomeKind(str, Enum):
    OK = "ok"
    SCHEMA_VIOLATION = "schema_violation"
    CONTENT_VIOLATION = "content_violation"


class ValidationOutcome(BaseModel):
    kind: OutcomeKind
    errors: List[str] = Field(default_factory=list)
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.OK

    def label(self) -> str:
        """Short form stored in audit records."""

        if self.kind == OutcomeKind.SCHEMA_VIOLATION:
            return f"schema_violation:{','.join(self.errors)}"
        if self.kind == OutcomeKind.CONTENT_VIOLATION:
            return f"content_violation:{self.reason}"
        return "ok"


def _type_ok(value: Any, types: Tuple[type, ...]) -> bool:
    # bool is an int subclass but never a valid number here
    if isinstance(value, bool):
        return bool in types
    return isinstance(value, types)


def _finite(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (OverflowError, TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _check_entries(name: str, entries: List[Any], schema: Dict[str, Tuple[type, ...]]) -> List[str]:
    errors: List[str] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            errors.append(f"{name}[{index}]")
            continue
        for key, types in schema.items():
            if key not in entry or not _type_ok(entry[key], types):
                errors.append(f"{name}[{index}].{key}")
            elif isinstance(entry[key], (int, float)) and _finite(entry[key]) is None:
                # huge ints overflow float, nan and inf are not comparable
                errors.append(f"{name}[{index}].{key}")
    return errors


def _schema_errors(candidate: Mapping[str, Any]) -> List[str]:
    errors: List[str] = []
    for name, types in REQUIRED_FIELDS.items():
        if name not in candidate or not _type_ok(candidate[name], types):
            errors.append(name)
    if errors:
        return errors
    errors += _check_entries("obligation_changes", candidate["obligation_changes"], OBLIGATION_ENTRY_FIELDS)
    errors += _check_entries("permission_changes", candidate["permission_changes"], OBLIGATION_ENTRY_FIELDS)
    errors += _check_entries("numeric_changes", candidate["numeric_changes"], NUMERIC_ENTRY_FIELDS)
    return errors


def _enum_errors(candidate: Mapping[str, Any]) -> List[str]:
    change_types = {member.value for member in ChangeType}
    levels = {member.value for member in RiskLevel}
    errors: List[str] = []
    if candidate["change_type"] not in change_types:
        errors.append("change_type")
    if candidate["risk_level"] not in levels:
        errors.append("risk_level")
    for name, key in (
        ("obligation_changes", "severity"),
        ("permission_changes", "severity"),
        ("numeric_changes", "significance"),
    ):
        for index, entry in enumerate(candidate[name]):
            if entry[key] not in levels:
                errors.append(f"{name}[{index}].{key}")
    return errors


def _iter_strings(value: Any, path: str = "") -> Iterator[Tuple[str, str]]:
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield from _iter_strings(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from _iter_strings(item, f"{path}[{index}]")


def content_violation(candidate: Mapping[str, Any]) -> Optional[str]:
    """Return a reason string if any text breaches the content policy."""

    for path, text in _iter_strings(candidate):
        for pattern in ADVICE_PATTERNS:
            if pattern.search(text):
                return f"legal_advice in {path}"
        for label, pattern in PII_PATTERNS.items():
            if pattern.search(text):
                return f"pii:{label} in {path}"
    return None


def validate(candidate_result: Any) -> ValidationOutcome:
    """Validate a structured result without mutating it."""

    if not isinstance(candidate_result, Mapping):
        return ValidationOutcome(kind=OutcomeKind.SCHEMA_VIOLATION, errors=["response"])
    candidate = copy.deepcopy(dict(candidate_result))

    errors = _schema_errors(candidate)
    if errors:
        return ValidationOutcome(kind=OutcomeKind.SCHEMA_VIOLATION, errors=errors)

    errors = _enum_errors(candidate)
    if errors:
        return ValidationOutcome(kind=OutcomeKind.SCHEMA_VIOLATION, errors=errors)

    confidence = _finite(candidate["confidence"])
    if confidence is None or not 0.0 <= confidence <= 1.0:
        return ValidationOutcome(kind=OutcomeKind.SCHEMA_VIOLATION, errors=["confidence"])

    reason = content_violation(candidate)
    if reason:
        return ValidationOutcome(kind=OutcomeKind.CONTENT_VIOLATION, reason=reason)
    return ValidationOutcome(kind=OutcomeKind.OK)


def ensure_valid(candidate_result: Any) -> ValidationOutcome:
    """Like :func:`validate` but raises on any violation."""

    outcome = validate(candidate_result)
    if outcome.kind == OutcomeKind.SCHEMA_VIOLATION:
        raise SchemaViolation(outcome.errors)
    if outcome.kind == OutcomeKind.CONTENT_VIOLATION:
        raise ContentViolation(outcome.reason or "content policy")
    return outcome
