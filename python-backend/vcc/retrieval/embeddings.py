"""Embedding providers and the per-run embedding cache."""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import structlog
from sklearn.feature_extraction.text import TfidfVectorizer

from ..errors import InputError, ProviderError
from ..models_vcc import Clause, ExcludedClause

logger = structlog.get_logger(__name__)


class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> List[float]:
        ...


class EmbeddingCache:
    """Clause id to vector map shared by one comparison run.

    Reads are lock-free; writes are serialised.
    """

    def __init__(self) -> None:
        self._vectors: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def get(self, clause_id: str) -> Optional[List[float]]:
        return self._vectors.get(clause_id)

    def put(self, clause_id: str, vector: List[float]) -> None:
        with self._lock:
            self._vectors.setdefault(clause_id, vector)

    def __contains__(self, clause_id: str) -> bool:
        return clause_id in self._vectors

    def __len__(self) -> int:
        return len(self._vectors)


class TfidfEmbeddingProvider:
    """Local embedder fitted on the clause texts of both versions."""

    def __init__(self, corpus: Sequence[str]) -> None:
        self._vectorizer = TfidfVectorizer(stop_words="english", ngram_range=(1, 2), max_features=5000)
        try:
            self._vectorizer.fit(list(corpus))
        except ValueError as exc:
            # Empty vocabulary (all stop words or empty corpus)
            raise ProviderError(f"cannot fit TF-IDF embedder: {exc}") from exc

    def embed(self, text: str) -> List[float]:
        matrix = self._vectorizer.transform([text])
        return matrix.toarray()[0].astype(np.float64).tolist()


def _doc_key(clause: Clause) -> str:
    return f"{clause.doc_version}:{clause.id}"


def embed_clauses(
    clauses: Sequence[Clause],
    provider: EmbeddingProvider,
    cache: EmbeddingCache,
    *,
    dimension: Optional[int] = None,
) -> Tuple[Dict[str, List[float]], List[ExcludedClause], Optional[int]]:
    """Embed clauses through the cache.

    Returns the vectors keyed by clause id, the clauses excluded because of
    input or provider failures, and the vector dimension seen.
    """

    vectors: Dict[str, List[float]] = {}
    excluded: List[ExcludedClause] = []
    for clause in clauses:
        key = _doc_key(clause)
        try:
            if not clause.text.strip():
                raise InputError("clause text is empty")
            vector = cache.get(key)
            if vector is None:
                try:
                    vector = [float(value) for value in provider.embed(clause.text)]
                except (InputError, ProviderError):
                    raise
                except Exception as exc:
                    raise ProviderError(str(exc)) from exc
                cache.put(key, vector)
            if not vector:
                raise InputError("embedding provider returned an empty vector")
            if dimension is None:
                dimension = len(vector)
            elif len(vector) != dimension:
                raise InputError(f"vector length {len(vector)} != expected {dimension}")
        except (InputError, ProviderError) as exc:
            logger.warning(
                "clause excluded from alignment",
                clause_id=clause.id,
                doc_version=clause.doc_version,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            excluded.append(
                ExcludedClause(
                    clause_id=clause.id,
                    doc_version=clause.doc_version,
                    reason=f"{type(exc).__name__}: {exc}",
                )
            )
            continue
        vectors[clause.id] = vector
    return vectors, excluded, dimension
