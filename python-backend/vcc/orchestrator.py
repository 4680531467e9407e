"""Comparator orchestrator: one resolved alignment to one finalized result.

Each call walks an explicit state machine::

    PENDING -> RULE_CHECKED -> MODEL_CALLED -> VALIDATED -> FINALIZED
                                   ^              |
                                   +---- RETRY <--+--> FALLBACK -> FINALIZED

``REJECTED`` is terminal and only reached for alignments that carry nothing
to compare. Every oracle attempt, every fallback and every rule-only result
appends exactly one :class:`AuditRecord` to the shared trail.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog
from pydantic import ValidationError

from .concurrency import CallTimeout, CancellationToken, call_with_timeout
from .config_loader import ComparisonConfig
from .errors import InputError, OracleTimeout, SchemaViolation
from .guardrails import OutcomeKind, ValidationOutcome, validate
from .models_vcc import (
    AuditRecord,
    ChangeType,
    Clause,
    ComparisonResult,
    NumericChange,
    ObligationChange,
    OrchestratorState,
    Provenance,
    ResolvedAlignment,
    ResultSource,
    ReviewState,
    RiskLevel,
    max_risk,
    shape_allows,
)
from .oracle import SemanticDiffOracle, hash_payload, strict_augmentation
from .rules import RuleSignals, describe, run_rule_check
from .storage.audit_store import AuditTrail

logger = structlog.get_logger(__name__)

RULE_ONLY_VERSION = "rules"


@dataclass
class ComparisonInput:
    """Texts and metadata of one alignment, as handed to the oracle."""

    alignment: ResolvedAlignment
    old_text: str
    new_text: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def clause_refs(self) -> List[str]:
        return [f"old:{cid}" for cid in self.alignment.old_clause_ids] + [
            f"new:{cid}" for cid in self.alignment.new_clause_ids
        ]

    def digest(self) -> str:
        return hash_payload(
            {"old_text": self.old_text, "new_text": self.new_text, "metadata": self.metadata}
        )[:12]


def build_input(
    alignment: ResolvedAlignment,
    old_clauses: Mapping[str, Clause],
    new_clauses: Mapping[str, Clause],
) -> ComparisonInput:
    """Join grouped clause texts and collect the metadata sent to the oracle."""

    try:
        olds = [old_clauses[cid] for cid in alignment.old_clause_ids]
        news = [new_clauses[cid] for cid in alignment.new_clause_ids]
    except KeyError as exc:
        raise InputError(f"alignment {alignment.key} references unknown clause {exc.args[0]}") from exc
    metadata = {
        "change_type": alignment.change_type.value,
        "old_clause_ids": list(alignment.old_clause_ids),
        "new_clause_ids": list(alignment.new_clause_ids),
        "old_section_paths": [list(c.section_path) for c in olds],
        "new_section_paths": [list(c.section_path) for c in news],
        "old_doc_version": olds[0].doc_version if olds else None,
        "new_doc_version": news[0].doc_version if news else None,
        "alignment_score": alignment.score,
    }
    return ComparisonInput(
        alignment=alignment,
        old_text="\n\n".join(c.text for c in olds),
        new_text="\n\n".join(c.text for c in news),
        metadata=metadata,
    )


def result_id_for(comparison_key: str) -> str:
    return sha256(comparison_key.encode("utf-8")).hexdigest()[:16]


def review_gate(
    config: ComparisonConfig,
    change_type: ChangeType,
    risk_level: RiskLevel,
    confidence: float,
    signals: RuleSignals,
) -> ReviewState:
    """Decide whether a result may be auto-verified."""

    if confidence < config.confidence_threshold:
        return ReviewState.HUMAN_REVIEW_REQUIRED
    if risk_level == RiskLevel.HIGH:
        return ReviewState.HUMAN_REVIEW_REQUIRED
    if change_type in config.critical_change_types:
        return ReviewState.HUMAN_REVIEW_REQUIRED
    if config.review_on_obligation_reversal and signals.obligation_reversal:
        return ReviewState.HUMAN_REVIEW_REQUIRED
    return ReviewState.AUTO_VERIFIED


def _merge_obligations(model: List[ObligationChange], rules: List[ObligationChange]) -> List[ObligationChange]:
    seen = {(c.entity, c.old_obligation, c.new_obligation) for c in model}
    merged = list(model)
    for change in rules:
        key = (change.entity, change.old_obligation, change.new_obligation)
        if key not in seen:
            seen.add(key)
            merged.append(change)
    return merged


def _merge_numeric(model: List[NumericChange], rules: List[NumericChange]) -> List[NumericChange]:
    seen = {(c.field, c.old_value, c.new_value) for c in model}
    merged = list(model)
    for change in rules:
        key = (change.field, change.old_value, change.new_value)
        if key not in seen:
            seen.add(key)
            merged.append(change)
    return merged


def _parse_changes(
    raw: Mapping[str, Any],
) -> Tuple[List[ObligationChange], List[ObligationChange], List[NumericChange]]:
    return (
        [ObligationChange(**entry) for entry in raw["obligation_changes"]],
        [ObligationChange(**entry) for entry in raw["permission_changes"]],
        [NumericChange(**entry) for entry in raw["numeric_changes"]],
    )


class Comparator:
    """Runs the comparison state machine for individual alignments.

    Instances are safe to share between worker threads: the only mutable
    state is the finalized-result cache (lock protected) and the audit
    trail, which serialises its own appends.
    """

    def __init__(
        self,
        config: ComparisonConfig,
        audit: AuditTrail,
        oracle: Optional[SemanticDiffOracle] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.config = config
        self.audit = audit
        self.oracle = oracle
        self._executor = executor
        self._owns_executor = False
        self._cache: "OrderedDict[str, ComparisonResult]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def model_version(self) -> str:
        if self.oracle is None:
            return RULE_ONLY_VERSION
        return str(getattr(self.oracle, "model_version", "unknown"))

    def comparison_key(self, comparison: ComparisonInput) -> str:
        """Alignment ids, model version and a digest of the compared content."""

        return f"{comparison.alignment.key}@{self.model_version}#{comparison.digest()}"

    def _oracle_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.max_workers, thread_name_prefix="vcc-oracle"
                )
                self._owns_executor = True
            return self._executor

    def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
            self._owns_executor = False

    def compare(
        self,
        comparison: ComparisonInput,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ComparisonResult:
        """Compare one alignment and return its finalized result.

        Repeated calls for the same alignment and model version return the
        cached result and append no audit records while the result stays
        within the ``result_cache_size`` most recently used.
        """

        alignment = comparison.alignment
        key = self.comparison_key(comparison)
        log = logger.bind(comparison_key=key)
        if alignment.change_type == ChangeType.UNCHANGED:
            log.debug("comparison rejected", state=OrchestratorState.REJECTED.value)
            raise InputError(f"alignment {alignment.key} is unchanged and has nothing to compare")

        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
        if cached is not None:
            log.debug("comparison served from cache")
            return cached

        trace = [OrchestratorState.PENDING]
        signals = run_rule_check(comparison.old_text, comparison.new_text, self.config.critical_keywords)
        trace.append(OrchestratorState.RULE_CHECKED)

        if self.oracle is None:
            result = self._rule_only(comparison, key, signals, trace)
        else:
            result = self._run_oracle(comparison, key, signals, trace, cancel_token, log)

        with self._lock:
            # a concurrent call for the same alignment may have finished first
            result = self._cache.setdefault(key, result)
            while len(self._cache) > self.config.result_cache_size:
                self._cache.popitem(last=False)
        log.info(
            "comparison finalized",
            source=result.provenance.source.value,
            retries=result.provenance.retries_used,
            risk=result.risk_level.value,
            review_state=result.review_state.value,
        )
        return result

    def _run_oracle(
        self,
        comparison: ComparisonInput,
        key: str,
        signals: RuleSignals,
        trace: List[OrchestratorState],
        cancel_token: Optional[CancellationToken],
        log: Any,
    ) -> ComparisonResult:
        retries_used = 0
        errors: List[str] = []
        while True:
            attempt = retries_used + 1
            hint: Dict[str, Any] = signals.hint()
            if retries_used:
                hint["instruction"] = strict_augmentation(errors, attempt)
            prompt_hash = hash_payload(
                {
                    "old_text": comparison.old_text,
                    "new_text": comparison.new_text,
                    "metadata": comparison.metadata,
                    "hint": hint,
                }
            )
            trace.append(OrchestratorState.MODEL_CALLED)
            raw = None
            try:
                raw = self._call_oracle(comparison, hint)
            except OracleTimeout as exc:
                log.warning("oracle timed out", error=str(exc))
                outcome = ValidationOutcome(kind=OutcomeKind.SCHEMA_VIOLATION, errors=["oracle_timeout"])
            except SchemaViolation as exc:
                log.warning("oracle call failed", error=str(exc))
                outcome = ValidationOutcome(kind=OutcomeKind.SCHEMA_VIOLATION, errors=exc.fields)
            else:
                outcome = self._check(raw, comparison.alignment)
            trace.append(OrchestratorState.VALIDATED)
            self._record(
                comparison,
                key,
                attempt=attempt,
                state=OrchestratorState.MODEL_CALLED,
                outcome=outcome.label(),
                prompt_hash=prompt_hash,
                raw_response_hash=hash_payload(raw) if raw is not None else None,
                model_version=self.model_version,
            )
            if outcome.ok:
                return self._from_model(comparison, key, raw, signals, retries_used, trace)

            errors = outcome.errors or [outcome.reason or "content"]
            log.warning("oracle answer rejected", attempt=attempt, outcome=outcome.label())
            cancelled = cancel_token is not None and cancel_token.cancelled
            if retries_used < self.config.max_retries and not cancelled:
                trace.append(OrchestratorState.RETRY)
                retries_used += 1
                continue
            if cancelled:
                log.info("retries skipped after cancellation", attempt=attempt)
            return self._fallback(comparison, key, signals, retries_used, trace, cancelled)

    @staticmethod
    def _check(raw: Any, alignment: ResolvedAlignment) -> ValidationOutcome:
        outcome = validate(raw)
        if outcome.ok and not shape_allows(
            ChangeType(raw["change_type"]), alignment.old_clause_ids, alignment.new_clause_ids
        ):
            return ValidationOutcome(kind=OutcomeKind.SCHEMA_VIOLATION, errors=["change_type_inconsistent"])
        if outcome.ok:
            try:
                _parse_changes(raw)
            except ValidationError as exc:
                fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
                return ValidationOutcome(kind=OutcomeKind.SCHEMA_VIOLATION, errors=fields or ["changes"])
            except TypeError:
                return ValidationOutcome(kind=OutcomeKind.SCHEMA_VIOLATION, errors=["changes"])
        return outcome

    def _call_oracle(self, comparison: ComparisonInput, hint: Dict[str, Any]) -> Any:
        assert self.oracle is not None
        try:
            return call_with_timeout(
                self._oracle_executor(),
                self.oracle.compare,
                self.config.oracle_timeout_s,
                comparison.old_text,
                comparison.new_text,
                comparison.metadata,
                hint,
            )
        except CallTimeout as exc:
            raise OracleTimeout(str(exc)) from exc
        except Exception as exc:  # the oracle is an untrusted external service
            raise SchemaViolation([f"oracle_error:{type(exc).__name__}"]) from exc

    def _record(
        self,
        comparison: ComparisonInput,
        key: str,
        *,
        attempt: int,
        state: OrchestratorState,
        outcome: str,
        prompt_hash: Optional[str] = None,
        raw_response_hash: Optional[str] = None,
        model_version: Optional[str] = None,
    ) -> None:
        self.audit.append(
            AuditRecord(
                comparison_key=key,
                attempt=attempt,
                state=state.value,
                input_clause_ids=comparison.clause_refs,
                prompt_hash=prompt_hash,
                model_version=model_version,
                raw_response_hash=raw_response_hash,
                validation_outcome=outcome,
            )
        )

    def _finalize(
        self,
        comparison: ComparisonInput,
        key: str,
        *,
        change_type: ChangeType,
        obligation_changes: Sequence[ObligationChange],
        permission_changes: Sequence[ObligationChange],
        numeric_changes: Sequence[NumericChange],
        risk_level: RiskLevel,
        summary: str,
        confidence: float,
        provenance: Provenance,
        signals: RuleSignals,
        trace: List[OrchestratorState],
    ) -> ComparisonResult:
        review_state = review_gate(self.config, change_type, risk_level, confidence, signals)
        trace.append(OrchestratorState.FINALIZED)
        return ComparisonResult(
            result_id=result_id_for(key),
            alignment=comparison.alignment,
            change_type=change_type,
            obligation_changes=list(obligation_changes),
            permission_changes=list(permission_changes),
            numeric_changes=list(numeric_changes),
            risk_level=risk_level,
            human_summary=summary,
            confidence=confidence,
            provenance=provenance,
            review_state=review_state,
            rule_flags=list(signals.flags),
            state_trace=list(trace),
        )

    def _from_model(
        self,
        comparison: ComparisonInput,
        key: str,
        raw: Mapping[str, Any],
        signals: RuleSignals,
        retries_used: int,
        trace: List[OrchestratorState],
    ) -> ComparisonResult:
        obligations, permissions, numerics = _parse_changes(raw)
        return self._finalize(
            comparison,
            key,
            change_type=ChangeType(raw["change_type"]),
            obligation_changes=_merge_obligations(obligations, signals.obligation_changes),
            permission_changes=_merge_obligations(permissions, signals.permission_changes),
            numeric_changes=_merge_numeric(numerics, signals.numeric_changes),
            risk_level=max_risk(RiskLevel(raw["risk_level"]), signals.risk_level),
            summary=raw["human_summary"],
            confidence=float(raw["confidence"]),
            provenance=Provenance(
                source=ResultSource.MODEL,
                model_version=self.model_version,
                retries_used=retries_used,
            ),
            signals=signals,
            trace=trace,
        )

    def _fallback(
        self,
        comparison: ComparisonInput,
        key: str,
        signals: RuleSignals,
        retries_used: int,
        trace: List[OrchestratorState],
        cancelled: bool,
    ) -> ComparisonResult:
        trace.append(OrchestratorState.FALLBACK)
        self._record(
            comparison,
            key,
            attempt=retries_used + 2,
            state=OrchestratorState.FALLBACK,
            outcome="cancelled" if cancelled else "retries_exhausted",
        )
        return self._finalize(
            comparison,
            key,
            change_type=comparison.alignment.change_type,
            obligation_changes=signals.obligation_changes,
            permission_changes=signals.permission_changes,
            numeric_changes=signals.numeric_changes,
            risk_level=signals.risk_level,
            summary=describe(comparison.alignment, signals),
            confidence=self.config.fallback_confidence,
            provenance=Provenance(
                source=ResultSource.FALLBACK,
                model_version=None,
                retries_used=retries_used,
            ),
            signals=signals,
            trace=trace,
        )

    def _rule_only(
        self,
        comparison: ComparisonInput,
        key: str,
        signals: RuleSignals,
        trace: List[OrchestratorState],
    ) -> ComparisonResult:
        self._record(
            comparison,
            key,
            attempt=1,
            state=OrchestratorState.RULE_CHECKED,
            outcome="rule_only",
        )
        return self._finalize(
            comparison,
            key,
            change_type=comparison.alignment.change_type,
            obligation_changes=signals.obligation_changes,
            permission_changes=signals.permission_changes,
            numeric_changes=signals.numeric_changes,
            risk_level=signals.risk_level,
            summary=describe(comparison.alignment, signals),
            confidence=self.config.rule_confidence,
            provenance=Provenance(source=ResultSource.RULE),
            signals=signals,
            trace=trace,
        )
