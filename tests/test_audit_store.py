from pathlib import Path
import sys
import threading

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "python-backend"))

from conftest import FlakySink
from vcc.errors import ReviewStateError
from vcc.models_vcc import AuditRecord, ChangeType, ComparisonResult, Provenance, ResolvedAlignment, ResultSource, ReviewState, RiskLevel
from vcc.storage import AuditTrail, MemoryAuditSink, ReviewRegistry, SQLiteAuditSink


def _record(key: str = "a->b@m#1", attempt: int = 1, **extra) -> AuditRecord:
    return AuditRecord(
        comparison_key=key,
        attempt=attempt,
        state="MODEL_CALLED",
        input_clause_ids=["old:a", "new:b"],
        prompt_hash="p",
        model_version="m",
        raw_response_hash="r",
        validation_outcome="ok",
        **extra,
    )


def _result(result_id: str, review_state: ReviewState) -> ComparisonResult:
    return ComparisonResult(
        result_id=result_id,
        alignment=ResolvedAlignment(change_type=ChangeType.MODIFIED, old_clause_ids=["a"], new_clause_ids=["b"]),
        change_type=ChangeType.MODIFIED,
        risk_level=RiskLevel.LOW,
        human_summary="Clause a was modified as b.",
        confidence=0.7,
        provenance=Provenance(source=ResultSource.MODEL, model_version="m"),
        review_state=review_state,
    )


def test_sqlite_sink_round_trip(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("VCC_AUDIT_DB_PATH", str(tmp_path / "audit.db"))
    sink = SQLiteAuditSink()
    record = _record(human_override="human_approved")
    sink.write(record)

    stored = sink.get_records("a->b@m#1")
    assert len(stored) == 1
    assert stored[0].record_id == record.record_id
    assert stored[0].input_clause_ids == ["old:a", "new:b"]
    assert stored[0].human_override == "human_approved"
    assert stored[0].timestamp == record.timestamp
    assert (tmp_path / "audit.db").exists()


def test_sqlite_sink_ignores_duplicate_attempts(tmp_path) -> None:
    sink = SQLiteAuditSink(tmp_path / "audit.db")
    sink.write(_record())
    sink.write(_record())
    sink.write(_record(attempt=2))
    assert [record.attempt for record in sink.get_records()] == [1, 2]


def test_trail_deduplicates_appends() -> None:
    sink = MemoryAuditSink()
    trail = AuditTrail(sink)
    assert trail.append(_record()) is True
    assert trail.append(_record()) is False
    assert len(sink.records()) == 1
    assert trail.attempts_for("a->b@m#1") == 1


def test_trail_buffers_failed_writes() -> None:
    sink = FlakySink(failures=2)
    trail = AuditTrail(sink)
    trail.append(_record(attempt=1))
    assert trail.pending == 1
    trail.append(_record(attempt=2))
    assert trail.pending == 2
    assert trail.flush() is True
    assert [record.attempt for record in sink.written] == [1, 2]
    assert trail.degraded is False


def test_trail_degrades_when_sink_stays_down() -> None:
    trail = AuditTrail(FlakySink(failures=1000))
    trail.append(_record())
    assert trail.flush(attempts=2) is False
    assert trail.degraded is True
    assert len(trail.records()) == 1


def test_trail_filters_by_key() -> None:
    trail = AuditTrail()
    trail.append(_record("k1"))
    trail.append(_record("k2"))
    assert [record.comparison_key for record in trail.records({"k2"})] == ["k2"]


def test_trail_keeps_only_recent_written_records() -> None:
    sink = MemoryAuditSink()
    trail = AuditTrail(sink, retain=2)
    for attempt in range(1, 6):
        trail.append(_record(attempt=attempt))

    assert [record.attempt for record in trail.records()] == [4, 5]
    assert len(sink.records()) == 5
    assert trail.attempts_for("a->b@m#1") == 5
    # evicted attempts are still known to the index
    assert trail.append(_record(attempt=1)) is False


def test_trail_never_evicts_pending_records() -> None:
    sink = FlakySink(failures=3)
    trail = AuditTrail(sink, retain=1)
    for attempt in range(1, 4):
        trail.append(_record(attempt=attempt))

    assert trail.pending == 3
    assert len(trail.records()) == 3
    assert trail.flush() is True
    assert [record.attempt for record in trail.records()] == [3]
    assert [record.attempt for record in sink.written] == [1, 2, 3]


def test_concurrent_appends_are_serialised() -> None:
    sink = MemoryAuditSink()
    trail = AuditTrail(sink)

    def worker(offset: int) -> None:
        for attempt in range(1, 51):
            trail.append(_record(f"key-{offset}", attempt))

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(sink.records()) == 400
    assert len({(r.comparison_key, r.attempt) for r in sink.records()}) == 400


def test_review_registry_transitions() -> None:
    registry = ReviewRegistry()
    registry.register([_result("r1", ReviewState.HUMAN_REVIEW_REQUIRED), _result("r2", ReviewState.AUTO_VERIFIED)])
    assert [result.result_id for result in registry.pending_review()] == ["r1"]

    updated = registry.transition("r1", "rejected")
    assert updated.review_state == ReviewState.HUMAN_REJECTED
    assert registry.get("r1").review_state == ReviewState.HUMAN_REJECTED

    with pytest.raises(ReviewStateError):
        registry.transition("r2", "approve")
    with pytest.raises(ReviewStateError):
        registry.transition("r1", "maybe")
    with pytest.raises(KeyError):
        registry.transition("r3", "approve")
