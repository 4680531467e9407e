"""FastAPI router exposing the Versioned Clause Comparer."""

from __future__ import annotations

import os
import threading
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from vcc.config_loader import ConfigRegistry
from vcc.errors import AlignmentError, ConfigError, ContentViolation, InputError, ReviewStateError, SchemaViolation
from vcc.guardrails import ensure_valid
from vcc.models_vcc import Clause, ComparisonReport, ComparisonResult
from vcc.oracle import OpenAISemanticOracle
from vcc.pipeline import PipelineCoordinator
from vcc.storage import AuditTrail, SQLiteAuditSink
from vcc.storage.review_store import parse_decision

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/vcc", tags=["versioned-clause-comparer"])

_coordinator: Optional[PipelineCoordinator] = None
_coordinator_lock = threading.Lock()


class ClausePayload(BaseModel):
    id: str
    text: str
    section_path: List[str] = Field(default_factory=list)


class CompareRequest(BaseModel):
    old_version: str = "old"
    new_version: str = "new"
    old_clauses: List[ClausePayload]
    new_clauses: List[ClausePayload]


class ReviewRequest(BaseModel):
    decision: str
    reviewer: Optional[str] = None


class ConfigUpdate(BaseModel):
    changes: Dict[str, Any]


def get_coordinator() -> PipelineCoordinator:
    """Process-wide coordinator; the oracle is enabled when an API key is set."""

    global _coordinator
    with _coordinator_lock:
        if _coordinator is None:
            oracle = OpenAISemanticOracle() if os.environ.get("OPENAI_API_KEY") else None
            _coordinator = PipelineCoordinator(
                ConfigRegistry(),
                oracle=oracle,
                audit=AuditTrail(SQLiteAuditSink()),
            )
        return _coordinator


def reset_coordinator() -> None:
    global _coordinator
    with _coordinator_lock:
        if _coordinator is not None:
            _coordinator.close()
        _coordinator = None


def _to_clauses(payloads: List[ClausePayload], version: str) -> List[Clause]:
    return [
        Clause(id=payload.id, text=payload.text, section_path=payload.section_path, doc_version=version)
        for payload in payloads
    ]


@router.post("/compare", response_model=ComparisonReport)
def compare_versions(
    request: CompareRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> ComparisonReport:
    trace_id = str(uuid4())
    log = logger.bind(trace_id=trace_id, endpoint="compare_versions")
    try:
        coordinator.registry.reload()
        return coordinator.compare(
            _to_clauses(request.old_clauses, request.old_version),
            _to_clauses(request.new_clauses, request.new_version),
        )
    except (AlignmentError, InputError) as exc:
        log.warning("comparison rejected", error=str(exc))
        raise HTTPException(status_code=422, detail={"message": str(exc), "trace_id": trace_id})
    except ConfigError as exc:
        log.error("configuration invalid", error=str(exc))
        raise HTTPException(status_code=500, detail={"message": str(exc), "trace_id": trace_id})


@router.get("/results/{result_id}", response_model=ComparisonResult)
def get_result(
    result_id: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> ComparisonResult:
    result = coordinator.get_result(result_id)
    if result is None:
        raise HTTPException(status_code=404, detail={"message": f"unknown result {result_id}"})
    return result


@router.post("/reviews/{result_id}", response_model=ComparisonResult)
def review_result(
    result_id: str,
    request: ReviewRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> ComparisonResult:
    trace_id = str(uuid4())
    log = logger.bind(trace_id=trace_id, endpoint="review_result", result_id=result_id)
    try:
        decision = parse_decision(request.decision)
    except ReviewStateError as exc:
        raise HTTPException(status_code=422, detail={"message": str(exc), "trace_id": trace_id})
    try:
        return coordinator.apply_review(result_id, decision, reviewer=request.reviewer)
    except KeyError:
        raise HTTPException(status_code=404, detail={"message": f"unknown result {result_id}", "trace_id": trace_id})
    except ReviewStateError as exc:
        log.warning("review rejected", error=str(exc))
        raise HTTPException(status_code=409, detail={"message": str(exc), "trace_id": trace_id})


@router.get("/config")
def read_config(coordinator: PipelineCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    config = coordinator.registry.current()
    return {"version": config.version, "settings": config.settings(), "history": coordinator.registry.history}


@router.put("/config")
def update_config(
    request: ConfigUpdate,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    try:
        config = coordinator.registry.update(**request.changes)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail={"message": str(exc)})
    return {"version": config.version, "settings": config.settings()}


@router.post("/validate")
def validate_result(candidate: Dict[str, Any]) -> Dict[str, str]:
    """Run the guardrails over a submitted result payload."""

    try:
        ensure_valid(candidate)
    except SchemaViolation as exc:
        raise HTTPException(status_code=422, detail={"kind": "schema_violation", "fields": exc.fields})
    except ContentViolation as exc:
        raise HTTPException(status_code=422, detail={"kind": "content_violation", "reason": str(exc)})
    return {"status": "ok"}
