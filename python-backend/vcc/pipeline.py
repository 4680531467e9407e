"""End-to-end comparison pipeline for the Versioned Clause Comparer."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union
from uuid import uuid4

import structlog

from .alignment import check_partition, resolve_alignments
from .concurrency import CancellationToken
from .config_loader import ComparisonConfig, ConfigRegistry
from .errors import AlignmentError, ProviderError, VCCError
from .models_vcc import (
    AuditRecord,
    ChangeType,
    Clause,
    ComparisonReport,
    ComparisonResult,
    ExcludedClause,
    MatchEntry,
    ResolvedAlignment,
    ReviewState,
)
from .oracle import SemanticDiffOracle
from .orchestrator import Comparator, ComparisonInput, build_input
from .retrieval import (
    EmbeddingCache,
    EmbeddingProvider,
    InMemoryNeighborIndex,
    NeighborIndex,
    TfidfEmbeddingProvider,
    embed_clauses,
    generate_candidates,
)
from .storage import AuditTrail, ReviewRegistry
from .summarizer import summarise_matches, summary_counts

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _ResultKey:
    key: str
    comparison: ComparisonInput


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def build_summary(matches: List[MatchEntry]) -> Dict[str, object]:
    """Summary block of a report; depends on nothing but the match list."""

    summary: Dict[str, object] = summary_counts(matches)
    summary["highlights"] = summarise_matches(matches)
    return summary


class PipelineCoordinator:
    """Coordinates embedding, alignment and per-alignment comparison.

    One coordinator serves many runs. Each run takes a snapshot of the
    current configuration; a configuration change between runs swaps the
    comparator, and with it the finalized-result cache.
    """

    def __init__(
        self,
        config: Union[ComparisonConfig, ConfigRegistry, None] = None,
        *,
        embedder: Optional[EmbeddingProvider] = None,
        index: Optional[NeighborIndex] = None,
        oracle: Optional[SemanticDiffOracle] = None,
        audit: Optional[AuditTrail] = None,
        reviews: Optional[ReviewRegistry] = None,
    ) -> None:
        if isinstance(config, ConfigRegistry):
            self.registry = config
        else:
            self.registry = ConfigRegistry(config=config) if config is not None else ConfigRegistry()
        self.embedder = embedder
        self.index = index
        self.oracle = oracle
        self.audit = audit or AuditTrail()
        self.reviews = reviews or ReviewRegistry()
        self._comparator: Optional[Comparator] = None
        self._result_keys: Dict[str, _ResultKey] = {}
        self._lock = threading.Lock()

    def _comparator_for(self, config: ComparisonConfig) -> Comparator:
        with self._lock:
            if self._comparator is None or self._comparator.config.version != config.version:
                if self._comparator is not None:
                    self._comparator.close()
                self._comparator = Comparator(config, self.audit, oracle=self.oracle)
            return self._comparator

    def close(self) -> None:
        with self._lock:
            if self._comparator is not None:
                self._comparator.close()
                self._comparator = None

    def _embedder_for(self, clauses: Sequence[Clause]) -> EmbeddingProvider:
        if self.embedder is not None:
            return self.embedder
        corpus = [clause.text for clause in clauses if clause.text.strip()]
        try:
            return TfidfEmbeddingProvider(corpus)
        except ProviderError as exc:
            raise AlignmentError(f"no usable clause text to embed: {exc}") from exc

    def compare(
        self,
        old_clauses: Sequence[Clause],
        new_clauses: Sequence[Clause],
        cancel_token: Optional[CancellationToken] = None,
    ) -> ComparisonReport:
        """Compare two document versions and return the aggregated report.

        Raises :class:`AlignmentError` for structurally unusable input; all
        per-clause and per-pair failures are isolated and reported.
        """

        config = self.registry.current()
        run_id = uuid4().hex
        log = logger.bind(run_id=run_id, config_version=config.version)
        token = cancel_token or CancellationToken()
        timings: Dict[str, float] = {}
        warnings: List[str] = []
        run_start = time.perf_counter()

        if not old_clauses and not new_clauses:
            raise AlignmentError("cannot align two empty document versions")

        start = time.perf_counter()
        embedder = self._embedder_for(list(old_clauses) + list(new_clauses))
        cache = EmbeddingCache()
        old_vectors, old_excluded, dimension = embed_clauses(old_clauses, embedder, cache)
        new_vectors, new_excluded, _ = embed_clauses(new_clauses, embedder, cache, dimension=dimension)
        timings["embed"] = _elapsed_ms(start)

        # timed-out index queries are abandoned on this pool
        io_pool = ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="vcc-io")
        try:
            start = time.perf_counter()
            index = self.index if self.index is not None else InMemoryNeighborIndex(old_vectors)
            candidates, candidate_excluded = generate_candidates(
                old_clauses, new_clauses, old_vectors, new_vectors, index, config, executor=io_pool
            )
            timings["candidates"] = _elapsed_ms(start)

            excluded: List[ExcludedClause] = old_excluded + new_excluded + candidate_excluded
            dropped_new = {item.clause_id for item in candidate_excluded}
            kept_old = [clause for clause in old_clauses if clause.id in old_vectors]
            kept_new = [
                clause for clause in new_clauses if clause.id in new_vectors and clause.id not in dropped_new
            ]

            start = time.perf_counter()
            alignments = resolve_alignments(kept_old, kept_new, candidates, config)
            timings["align"] = _elapsed_ms(start)

            start = time.perf_counter()
            comparator = self._comparator_for(config)
            results = self._dispatch(comparator, alignments, kept_old, kept_new, config, token, warnings, log)
            timings["compare"] = _elapsed_ms(start)
        finally:
            io_pool.shutdown(wait=False)

        self.reviews.register(results.values())
        # a result reviewed in an earlier run keeps its decision
        results = {key: self.reviews.get(result.result_id) or result for key, result in results.items()}
        matches = [MatchEntry(alignment=alignment, result=results.get(alignment.key)) for alignment in alignments]
        check_partition(
            [entry.alignment for entry in matches],
            [clause.id for clause in kept_old],
            [clause.id for clause in kept_new],
        )

        degraded = not self.audit.flush()
        if degraded:
            warnings.append(f"audit sink degraded: {self.audit.pending} records pending")
        run_keys = {
            self._result_keys[result.result_id].key
            for result in results.values()
            if result.result_id in self._result_keys
        }
        audit_records = self.audit.records(run_keys)

        if excluded:
            warnings.append(f"{len(excluded)} clauses excluded from alignment")
        if token.cancelled:
            warnings.append("run cancelled before all comparisons finished")
        timings["total"] = _elapsed_ms(run_start)

        report = ComparisonReport(
            run_id=run_id,
            config_version=config.version,
            matches=matches,
            summary=build_summary(matches),
            excluded=sorted(excluded, key=lambda item: (item.doc_version, item.clause_id)),
            warnings=warnings,
            audit_records=audit_records,
            cancelled=token.cancelled,
            degraded=degraded,
            timings_ms=timings,
        )
        log.info(
            "comparison run finished",
            alignments=len(alignments),
            compared=len(results),
            excluded=len(excluded),
            cancelled=report.cancelled,
            degraded=degraded,
        )
        return report

    def _dispatch(
        self,
        comparator: Comparator,
        alignments: Sequence[ResolvedAlignment],
        old_clauses: Sequence[Clause],
        new_clauses: Sequence[Clause],
        config: ComparisonConfig,
        token: CancellationToken,
        warnings: List[str],
        log,
    ) -> Dict[str, ComparisonResult]:
        old_by_id = {clause.id: clause for clause in old_clauses}
        new_by_id = {clause.id: clause for clause in new_clauses}
        pending = [alignment for alignment in alignments if alignment.change_type != ChangeType.UNCHANGED]
        results: Dict[str, ComparisonResult] = {}
        if not pending:
            return results

        def run_one(alignment: ResolvedAlignment) -> Optional[ComparisonResult]:
            if token.cancelled:
                return None
            comparison = build_input(alignment, old_by_id, new_by_id)
            result = comparator.compare(comparison, cancel_token=token)
            with self._lock:
                self._result_keys[result.result_id] = _ResultKey(comparator.comparison_key(comparison), comparison)
            return result

        with ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="vcc-compare") as pool:
            futures = {pool.submit(run_one, alignment): alignment for alignment in pending}
            for future in as_completed(futures):
                alignment = futures[future]
                try:
                    result = future.result()
                except VCCError as exc:
                    log.warning("comparison failed", alignment=alignment.key, error=str(exc))
                    warnings.append(f"comparison of {alignment.key} failed: {exc}")
                    continue
                except Exception as exc:  # one pair never aborts the run
                    log.exception("comparison crashed", alignment=alignment.key)
                    warnings.append(f"comparison of {alignment.key} failed: {type(exc).__name__}: {exc}")
                    continue
                if result is not None:
                    results[alignment.key] = result
        return results

    def get_result(self, result_id: str) -> Optional[ComparisonResult]:
        return self.reviews.get(result_id)

    def apply_review(
        self, result_id: str, decision: Union[str, ReviewState], reviewer: Optional[str] = None
    ) -> ComparisonResult:
        """Record a human decision on a result awaiting review.

        Only ``human_review_required`` results may transition; the decision
        is appended to the audit trail with ``human_override`` set.
        """

        updated = self.reviews.transition(result_id, decision)
        with self._lock:
            entry = self._result_keys.get(result_id)
        key = entry.key if entry is not None else result_id
        override = updated.review_state.value if reviewer is None else f"{updated.review_state.value}:{reviewer}"
        self.audit.append(
            AuditRecord(
                comparison_key=key,
                attempt=self.audit.attempts_for(key) + 1,
                state="REVIEW",
                input_clause_ids=entry.comparison.clause_refs if entry is not None else [],
                validation_outcome="human_review",
                human_override=override,
            )
        )
        self.audit.flush()
        logger.info("review applied", result_id=result_id, review_state=updated.review_state.value)
        return updated
