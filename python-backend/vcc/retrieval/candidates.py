"""Candidate generation: top-K old clauses for every new clause."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from ..concurrency import CallTimeout, call_with_timeout
from ..config_loader import ComparisonConfig
from ..errors import InputError, ProviderError
from ..models_vcc import CandidateMatch, Clause, ExcludedClause
from ..scoring.similarity import score
from .index import NeighborIndex

logger = structlog.get_logger(__name__)


def is_boost_eligible(old: Clause, new: Clause) -> bool:
    """Same clause id, or the same non-empty heading path."""

    if old.id == new.id:
        return True
    return bool(old.section_path) and list(old.section_path) == list(new.section_path)


def _query_index(
    index: NeighborIndex,
    vector: Sequence[float],
    k: int,
    executor: Optional[ThreadPoolExecutor],
    timeout_s: float,
) -> List[Tuple[str, float]]:
    try:
        if executor is None:
            return list(index.query(vector, k))
        return list(call_with_timeout(executor, index.query, timeout_s, vector, k))
    except CallTimeout as exc:
        raise ProviderError(f"neighbour index timed out: {exc}") from exc
    except (InputError, ProviderError):
        raise
    except Exception as exc:
        raise ProviderError(f"neighbour index failed: {exc}") from exc


def score_candidate(old: Clause, new: Clause, old_vec, new_vec, config: ComparisonConfig) -> CandidateMatch:
    similarity = score(
        old_vec,
        new_vec,
        old.text,
        new.text,
        embedding_weight=config.embedding_weight,
        lexical_weight=config.lexical_weight,
        jaccard_weight=config.jaccard_weight,
    )
    combined = similarity.combined_score
    boosted = is_boost_eligible(old, new)
    if boosted:
        combined = min(1.0, combined + config.boost_bonus)
    return CandidateMatch(
        old_clause_id=old.id,
        new_clause_id=new.id,
        embedding_score=similarity.embedding_score,
        lexical_score=similarity.lexical_score,
        combined_score=combined,
        boosted=boosted,
    )


def generate_candidates(
    old_clauses: Sequence[Clause],
    new_clauses: Sequence[Clause],
    old_vectors: Dict[str, List[float]],
    new_vectors: Dict[str, List[float]],
    index: NeighborIndex,
    config: ComparisonConfig,
    *,
    executor: Optional[ThreadPoolExecutor] = None,
) -> Tuple[Dict[str, List[CandidateMatch]], List[ExcludedClause]]:
    """Return ordered candidate lists keyed by new clause id.

    New clauses without a vector are skipped; clauses whose index lookup or
    scoring fails are reported as excluded.
    """

    old_by_id = {clause.id: clause for clause in old_clauses if clause.id in old_vectors}
    candidates: Dict[str, List[CandidateMatch]] = {}
    excluded: List[ExcludedClause] = []

    for new in sorted(new_clauses, key=lambda clause: clause.id):
        new_vec = new_vectors.get(new.id)
        if new_vec is None:
            continue
        try:
            neighbours = _query_index(index, new_vec, config.top_k, executor, config.oracle_timeout_s)
            matches: List[CandidateMatch] = []
            for old_id, _distance in neighbours[: config.top_k]:
                old = old_by_id.get(old_id)
                if old is None:
                    continue
                match = score_candidate(old, new, old_vectors[old_id], new_vec, config)
                if match.combined_score < config.similarity_threshold:
                    continue
                matches.append(match)
        except (InputError, ProviderError) as exc:
            logger.warning(
                "clause excluded from alignment",
                clause_id=new.id,
                doc_version=new.doc_version,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            excluded.append(
                ExcludedClause(clause_id=new.id, doc_version=new.doc_version, reason=f"{type(exc).__name__}: {exc}")
            )
            continue
        matches.sort(key=lambda m: (-m.combined_score, m.old_clause_id or ""))
        candidates[new.id] = matches[: config.top_k]
    return candidates, excluded
