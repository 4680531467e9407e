"""Combined embedding and lexical similarity for clause pairs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import regex as re
from rapidfuzz.distance import Levenshtein

from ..errors import InputError

DEFAULT_EMBEDDING_WEIGHT = 0.7
DEFAULT_LEXICAL_WEIGHT = 0.3
DEFAULT_JACCARD_WEIGHT = 0.5

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class SimilarityScore:
    embedding_score: float
    lexical_score: float
    combined_score: float


def tokenise(text: str) -> list[str]:
    return _TOKEN_PATTERN.findall(text.lower())


def normalise_text(text: str) -> str:
    """Lowercase and collapse whitespace; used for identity checks."""

    return _WHITESPACE.sub(" ", text.strip().lower())


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def cosine_score(old_vec: Sequence[float], new_vec: Sequence[float]) -> float:
    """Cosine similarity clamped to [0, 1]; negative similarity maps to 0."""

    if len(old_vec) != len(new_vec):
        raise InputError(f"vector length mismatch: {len(old_vec)} != {len(new_vec)}")
    if len(old_vec) == 0:
        raise InputError("empty embedding vector")
    a = np.asarray(old_vec, dtype=np.float64)
    b = np.asarray(new_vec, dtype=np.float64)
    if not (np.all(np.isfinite(a)) and np.all(np.isfinite(b))):
        raise InputError("embedding vector contains non-finite values")
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return _clamp(float(np.dot(a, b)) / norm)


def jaccard(tokens_a: set[str], tokens_b: set[str]) -> float:
    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def lexical_score(old_text: str, new_text: str, jaccard_weight: float = DEFAULT_JACCARD_WEIGHT) -> float:
    """Blend of token-set Jaccard and normalised edit similarity."""

    token_score = jaccard(set(tokenise(old_text)), set(tokenise(new_text)))
    # 1 - distance / max_len over the normalised strings
    edit_score = Levenshtein.normalized_similarity(normalise_text(old_text), normalise_text(new_text))
    return _clamp(jaccard_weight * token_score + (1.0 - jaccard_weight) * edit_score)


def score(
    old_vec: Sequence[float],
    new_vec: Sequence[float],
    old_text: str,
    new_text: str,
    *,
    embedding_weight: float = DEFAULT_EMBEDDING_WEIGHT,
    lexical_weight: float = DEFAULT_LEXICAL_WEIGHT,
    jaccard_weight: float = DEFAULT_JACCARD_WEIGHT,
) -> SimilarityScore:
    """Score a clause pair. Pure and deterministic."""

    if abs(embedding_weight + lexical_weight - 1.0) > 1e-6:
        raise InputError("embedding and lexical weights must sum to 1")
    embedding = cosine_score(old_vec, new_vec)
    lexical = lexical_score(old_text, new_text, jaccard_weight)
    combined = _clamp(embedding_weight * embedding + lexical_weight * lexical)
    return SimilarityScore(
        embedding_score=embedding,
        lexical_score=lexical,
        combined_score=combined,
    )
