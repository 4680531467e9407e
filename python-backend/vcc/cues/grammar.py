"""Regex cues for the rule tier: modal verbs, critical keywords, quantities."""

from __future__ import annotations

from enum import IntEnum
from typing import Dict, Iterable, List, NamedTuple, Optional

import regex as re


class Modality(IntEnum):
    """Strength of a modal construction, weakest first."""

    PERMISSIVE = 1
    ADVISORY = 2
    MANDATORY = 3
    PROHIBITED = 4


# Longest phrases first so "must not" wins over "must".
MODAL_PHRASES: Dict[str, Modality] = {
    "is prohibited from": Modality.PROHIBITED,
    "are prohibited from": Modality.PROHIBITED,
    "must not": Modality.PROHIBITED,
    "shall not": Modality.PROHIBITED,
    "may not": Modality.PROHIBITED,
    "cannot": Modality.PROHIBITED,
    "is required to": Modality.MANDATORY,
    "are required to": Modality.MANDATORY,
    "is obliged to": Modality.MANDATORY,
    "must": Modality.MANDATORY,
    "shall": Modality.MANDATORY,
    "should": Modality.ADVISORY,
    "is permitted to": Modality.PERMISSIVE,
    "are permitted to": Modality.PERMISSIVE,
    "is entitled to": Modality.PERMISSIVE,
    "are entitled to": Modality.PERMISSIVE,
    "may": Modality.PERMISSIVE,
    "can": Modality.PERMISSIVE,
}

_MODAL_ALTERNATION = "|".join(re.escape(phrase) for phrase in MODAL_PHRASES)
MODAL_PATTERN = re.compile(
    rf"(?P<entity>\b[\w'-]+(?:[ \t]+[\w'-]+){{0,2}})[ \t]+(?P<modal>{_MODAL_ALTERNATION})\b",
    re.IGNORECASE,
)

_ENTITY_STOPWORDS = {"the", "a", "an", "any", "each", "all", "of", "and", "or", "such", "that", "this"}

NUMBER_WORDS: Dict[str, float] = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
    "fifteen": 15, "eighteen": 18, "twenty": 20, "twenty-four": 24, "thirty": 30,
    "sixty": 60, "ninety": 90,
}

_NUMBER = r"\d[\d,]*(?:\.\d+)?|" + "|".join(sorted(NUMBER_WORDS, key=len, reverse=True))

DURATION_PATTERN = re.compile(
    rf"\b(?P<value>{_NUMBER})\s*(?:\(\d+\)\s*)?(?P<unit>day|week|month|year)s?\b",
    re.IGNORECASE,
)
MONEY_PATTERN = re.compile(
    r"(?P<currency>[$€£]|\b(?:USD|EUR|GBP)\s?)(?P<amount>\d[\d,]*(?:\.\d+)?)"
    r"(?:\s?(?P<scale>k|thousand|m|million|bn|billion)\b)?",
    re.IGNORECASE,
)
PERCENT_PATTERN = re.compile(r"\b(?P<value>\d+(?:\.\d+)?)\s?(?:%|percent\b|per cent\b)", re.IGNORECASE)

DAYS_PER_UNIT = {"day": 1.0, "week": 7.0, "month": 30.0, "year": 365.0}
MONEY_SCALE = {"k": 1e3, "thousand": 1e3, "m": 1e6, "million": 1e6, "bn": 1e9, "billion": 1e9}

FIELD_CONTEXT: Dict[str, re.Pattern[str]] = {
    "retention_period": re.compile(r"\b(?:retain|retention|retained|delet\w*|eras\w*|stor\w*|kept|keep|archiv\w*|purg\w*)\b", re.IGNORECASE),
    "notice_period": re.compile(r"\b(?:notice|notif\w*|inform\w*)\b", re.IGNORECASE),
    "penalty_amount": re.compile(r"\b(?:penalt\w*|fine[sd]?|liquidated damages)\b", re.IGNORECASE),
    "monetary_limit": re.compile(r"\b(?:limit\w*|cap(?:ped)?|maximum|not exceed|up to|ceiling)\b", re.IGNORECASE),
}

CONTEXT_WINDOW = 80


class ModalStatement(NamedTuple):
    entity: str
    phrase: str
    modality: Modality


class Quantity(NamedTuple):
    field: str
    value: float
    unit: str
    start: int


def _normalise_entity(raw: str) -> str:
    words = [word for word in raw.lower().split() if word not in _ENTITY_STOPWORDS]
    return " ".join(words[-2:]) if words else "party"


def detect_modals(text: str) -> List[ModalStatement]:
    """Return the modal statements of a text, first occurrence per entity."""

    statements: Dict[str, ModalStatement] = {}
    for match in MODAL_PATTERN.finditer(text):
        phrase = match.group("modal").lower()
        entity = _normalise_entity(match.group("entity"))
        statements.setdefault(entity, ModalStatement(entity, phrase, MODAL_PHRASES[phrase]))
    return list(statements.values())


def keyword_counts(text: str, keywords: Iterable[str]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for keyword in keywords:
        pattern = re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE)
        counts[keyword] = len(pattern.findall(text))
    return counts


def _parse_number(raw: str) -> Optional[float]:
    lowered = raw.lower()
    if lowered in NUMBER_WORDS:
        return float(NUMBER_WORDS[lowered])
    try:
        return float(lowered.replace(",", ""))
    except ValueError:
        return None


def _context_field(text: str, start: int, candidates: Iterable[str], default: str) -> str:
    window = text[max(0, start - CONTEXT_WINDOW): start + CONTEXT_WINDOW // 2]
    for name in candidates:
        if FIELD_CONTEXT[name].search(window):
            return name
    return default


def extract_quantities(text: str) -> List[Quantity]:
    """Extract durations, money amounts and percentages with a field label."""

    quantities: List[Quantity] = []
    for match in DURATION_PATTERN.finditer(text):
        value = _parse_number(match.group("value"))
        if value is None:
            continue
        field = _context_field(text, match.start(), ("retention_period", "notice_period"), "time_period")
        quantities.append(Quantity(field, value, match.group("unit").lower() + "s", match.start()))
    for match in MONEY_PATTERN.finditer(text):
        value = _parse_number(match.group("amount"))
        if value is None:
            continue
        scale = (match.group("scale") or "").lower()
        value *= MONEY_SCALE.get(scale, 1.0)
        field = _context_field(text, match.start(), ("penalty_amount", "monetary_limit"), "amount")
        quantities.append(Quantity(field, value, match.group("currency").strip().upper(), match.start()))
    for match in PERCENT_PATTERN.finditer(text):
        quantities.append(Quantity("percentage", float(match.group("value")), "%", match.start()))
    quantities.sort(key=lambda quantity: quantity.start)
    return quantities
