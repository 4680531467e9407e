"""Data models for the Versioned Clause Comparer pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ChangeType(str, Enum):
    """Kind of change event an alignment describes."""

    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    RELOCATED = "relocated"
    MERGED = "merged"
    SPLIT = "split"
    UNCHANGED = "unchanged"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


RISK_ORDER = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


def max_risk(*levels: RiskLevel) -> RiskLevel:
    """Return the most severe of the given risk levels."""

    return max(levels, key=lambda level: RISK_ORDER[level], default=RiskLevel.LOW)


class ResultSource(str, Enum):
    RULE = "rule"
    MODEL = "model"
    FALLBACK = "fallback"


class ReviewState(str, Enum):
    AUTO_VERIFIED = "auto_verified"
    LOW_CONFIDENCE = "low_confidence"
    HUMAN_REVIEW_REQUIRED = "human_review_required"
    HUMAN_APPROVED = "human_approved"
    HUMAN_REJECTED = "human_rejected"


class OrchestratorState(str, Enum):
    """States of the comparator state machine."""

    PENDING = "PENDING"
    RULE_CHECKED = "RULE_CHECKED"
    MODEL_CALLED = "MODEL_CALLED"
    VALIDATED = "VALIDATED"
    RETRY = "RETRY"
    FALLBACK = "FALLBACK"
    FINALIZED = "FINALIZED"
    REJECTED = "REJECTED"


class Clause(BaseModel):
    """A normalised clause belonging to one document version."""

    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    section_path: List[str] = Field(default_factory=list)
    doc_version: str


class CandidateMatch(BaseModel):
    """Provisional pairing of a new clause with an old clause."""

    old_clause_id: Optional[str]
    new_clause_id: str
    embedding_score: float = Field(ge=0.0, le=1.0)
    lexical_score: float = Field(ge=0.0, le=1.0)
    combined_score: float = Field(ge=0.0, le=1.0)
    boosted: bool = False


_SHAPE_RULES = {
    ChangeType.ADDED: lambda old, new: not old and len(new) == 1,
    ChangeType.REMOVED: lambda old, new: len(old) == 1 and not new,
    ChangeType.MERGED: lambda old, new: len(old) > 1 and len(new) == 1,
    ChangeType.SPLIT: lambda old, new: len(old) == 1 and len(new) > 1,
}


def shape_allows(change_type: ChangeType, old_ids: List[str], new_ids: List[str]) -> bool:
    """Whether a change type is compatible with the given id group sizes."""

    rule = _SHAPE_RULES.get(change_type)
    if rule is None:
        return len(old_ids) == 1 and len(new_ids) == 1
    return rule(old_ids, new_ids)


class ResolvedAlignment(BaseModel):
    """Grouping of old/new clause ids describing one change event."""

    model_config = ConfigDict(frozen=True)

    change_type: ChangeType
    old_clause_ids: List[str] = Field(default_factory=list)
    new_clause_ids: List[str] = Field(default_factory=list)
    score: Optional[float] = None

    @field_validator("old_clause_ids", "new_clause_ids")
    @classmethod
    def _sorted_unique(cls, value: List[str]) -> List[str]:
        return sorted(set(value))

    @model_validator(mode="after")
    def _check_shape(self) -> "ResolvedAlignment":
        if not shape_allows(self.change_type, self.old_clause_ids, self.new_clause_ids):
            raise ValueError(
                f"{self.change_type.value} alignment cannot have "
                f"{len(self.old_clause_ids)} old and {len(self.new_clause_ids)} new clauses"
            )
        return self

    @property
    def key(self) -> str:
        """Stable identity of the alignment within a run."""

        return f"{','.join(self.old_clause_ids)}->{','.join(self.new_clause_ids)}"

    def sort_key(self):
        return (self.new_clause_ids, self.old_clause_ids)


class ObligationChange(BaseModel):
    entity: str
    old_obligation: Optional[str]
    new_obligation: Optional[str]
    severity: RiskLevel


class NumericChange(BaseModel):
    field: str
    old_value: Optional[float]
    new_value: Optional[float]
    significance: RiskLevel
    unit: Optional[str] = None


class Provenance(BaseModel):
    source: ResultSource
    model_version: Optional[str] = None
    retries_used: int = 0


class ComparisonResult(BaseModel):
    """Finalized comparison of one resolved alignment."""

    result_id: str
    alignment: ResolvedAlignment
    change_type: ChangeType
    obligation_changes: List[ObligationChange] = Field(default_factory=list)
    permission_changes: List[ObligationChange] = Field(default_factory=list)
    numeric_changes: List[NumericChange] = Field(default_factory=list)
    risk_level: RiskLevel
    human_summary: str
    confidence: float = Field(ge=0.0, le=1.0)
    provenance: Provenance
    review_state: ReviewState
    rule_flags: List[str] = Field(default_factory=list)
    state_trace: List[OrchestratorState] = Field(default_factory=list)


class AuditRecord(BaseModel):
    """Append-only trace of one orchestrator attempt or review decision."""

    record_id: str = Field(default_factory=lambda: uuid4().hex)
    comparison_key: str
    attempt: int
    state: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    input_clause_ids: List[str] = Field(default_factory=list)
    prompt_hash: Optional[str] = None
    model_version: Optional[str] = None
    raw_response_hash: Optional[str] = None
    validation_outcome: str
    human_override: Optional[str] = None


class MatchEntry(BaseModel):
    """One row of the final match list."""

    alignment: ResolvedAlignment
    result: Optional[ComparisonResult] = None

    @property
    def change_type(self) -> ChangeType:
        if self.result is not None:
            return self.result.change_type
        return self.alignment.change_type


class ExcludedClause(BaseModel):
    clause_id: str
    doc_version: str
    reason: str


class ComparisonReport(BaseModel):
    """Top level output handed to report and UI consumers."""

    run_id: str
    config_version: int
    matches: List[MatchEntry]
    summary: Dict[str, Any]
    excluded: List[ExcludedClause] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    audit_records: List[AuditRecord] = Field(default_factory=list)
    cancelled: bool = False
    degraded: bool = False
    timings_ms: Dict[str, float] = Field(default_factory=dict)
