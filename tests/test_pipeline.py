from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "python-backend"))

from conftest import EchoOracle, FlakySink, ScriptedOracle, clause, valid_response
from vcc.concurrency import CancellationToken
from vcc.config_loader import ComparisonConfig, ConfigRegistry
from vcc.errors import AlignmentError, ReviewStateError
from vcc.models_vcc import ChangeType, MatchEntry, ResolvedAlignment, ResultSource, ReviewState, RiskLevel
from vcc.pipeline import PipelineCoordinator, build_summary
from vcc.storage import AuditTrail
from vcc.summarizer import summarise_matches


@pytest.fixture
def coordinator(embedder):
    coordinator = PipelineCoordinator(ComparisonConfig(), embedder=embedder, oracle=EchoOracle())
    yield coordinator
    coordinator.close()


def _by_new(report):
    return {tuple(entry.alignment.new_clause_ids): entry for entry in report.matches}


def test_end_to_end_report(coordinator, old_clauses, new_clauses) -> None:
    report = coordinator.compare(old_clauses, new_clauses)
    matches = _by_new(report)

    assert report.summary["total_modified"] == 2
    assert report.summary["total_unchanged"] == 1
    assert report.summary["total_added"] == 1
    assert report.summary["total_removed"] == 0
    assert report.excluded == []
    assert report.cancelled is False
    assert report.degraded is False

    assert matches[("2.1",)].result is None
    added = matches[("3.1",)]
    assert added.result.change_type == ChangeType.ADDED
    assert added.result.review_state == ReviewState.AUTO_VERIFIED

    modal = matches[("1.1",)].result
    assert "obligation_increase:company:may->must" in modal.rule_flags
    assert modal.review_state == ReviewState.HUMAN_REVIEW_REQUIRED
    assert matches[("1.2",)].result.risk_level == RiskLevel.HIGH
    assert set(report.timings_ms) >= {"embed", "candidates", "align", "compare", "total"}


def test_matches_cover_every_clause_once(coordinator, old_clauses, new_clauses) -> None:
    report = coordinator.compare(old_clauses, new_clauses)
    old_ids = [cid for entry in report.matches for cid in entry.alignment.old_clause_ids]
    new_ids = [cid for entry in report.matches for cid in entry.alignment.new_clause_ids]
    assert sorted(old_ids) == sorted(c.id for c in old_clauses)
    assert sorted(new_ids) == sorted(c.id for c in new_clauses)


def test_matches_are_ordered(coordinator, old_clauses, new_clauses) -> None:
    report = coordinator.compare(list(reversed(old_clauses)), list(reversed(new_clauses)))
    keys = [entry.alignment.sort_key() for entry in report.matches]
    assert keys == sorted(keys)


def test_audit_records_belong_to_run(coordinator, old_clauses, new_clauses) -> None:
    report = coordinator.compare(old_clauses, new_clauses)
    # one oracle attempt per compared alignment
    assert len(report.audit_records) == 3
    assert {record.model_version for record in report.audit_records} == {"echo-1"}


def test_rerun_reuses_finalized_results(embedder, old_clauses, new_clauses) -> None:
    oracle = EchoOracle()
    coordinator = PipelineCoordinator(ComparisonConfig(), embedder=embedder, oracle=oracle)
    try:
        first = coordinator.compare(old_clauses, new_clauses)
        second = coordinator.compare(old_clauses, new_clauses)
    finally:
        coordinator.close()
    assert oracle.calls == 3
    assert [e.result for e in first.matches] == [e.result for e in second.matches]
    assert first.summary == second.summary
    assert len(coordinator.audit.records()) == 3


def test_rule_only_run(embedder, old_clauses, new_clauses) -> None:
    coordinator = PipelineCoordinator(ComparisonConfig(), embedder=embedder)
    report = coordinator.compare(old_clauses, new_clauses)
    sources = {entry.result.provenance.source for entry in report.matches if entry.result}
    assert sources == {ResultSource.RULE}


def test_failing_oracle_falls_back_per_pair(embedder, old_clauses, new_clauses) -> None:
    coordinator = PipelineCoordinator(
        ComparisonConfig(max_retries=1), embedder=embedder, oracle=ScriptedOracle([RuntimeError("down")])
    )
    try:
        report = coordinator.compare(old_clauses, new_clauses)
    finally:
        coordinator.close()
    results = [entry.result for entry in report.matches if entry.result]
    assert len(results) == 3
    assert all(result.provenance.source == ResultSource.FALLBACK for result in results)
    assert all(result.review_state != ReviewState.AUTO_VERIFIED for result in results)


def test_cancelled_run_keeps_coverage(coordinator, old_clauses, new_clauses) -> None:
    token = CancellationToken()
    token.cancel()
    report = coordinator.compare(old_clauses, new_clauses, cancel_token=token)
    assert report.cancelled is True
    assert all(entry.result is None for entry in report.matches)
    assert len(report.matches) == 4
    assert any("cancelled" in warning for warning in report.warnings)


def test_excluded_clause_is_reported(coordinator, old_clauses, new_clauses) -> None:
    new = new_clauses + [clause("4.1", "   ", "v2")]
    report = coordinator.compare(old_clauses, new)
    assert [item.clause_id for item in report.excluded] == ["4.1"]
    assert all("4.1" not in entry.alignment.new_clause_ids for entry in report.matches)
    assert any("excluded" in warning for warning in report.warnings)


def test_empty_run_is_fatal(coordinator) -> None:
    with pytest.raises(AlignmentError):
        coordinator.compare([], [])


def test_degraded_audit_sink_is_reported(embedder, old_clauses, new_clauses) -> None:
    coordinator = PipelineCoordinator(
        ComparisonConfig(), embedder=embedder, oracle=EchoOracle(), audit=AuditTrail(FlakySink(failures=100))
    )
    try:
        report = coordinator.compare(old_clauses, new_clauses)
    finally:
        coordinator.close()
    assert report.degraded is True
    assert any("degraded" in warning for warning in report.warnings)
    assert len(report.matches) == 4


def test_apply_review_transitions_and_audits(coordinator, old_clauses, new_clauses) -> None:
    report = coordinator.compare(old_clauses, new_clauses)
    pending = _by_new(report)[("1.1",)].result
    updated = coordinator.apply_review(pending.result_id, "approve", reviewer="analyst")

    assert updated.review_state == ReviewState.HUMAN_APPROVED
    assert coordinator.get_result(pending.result_id).review_state == ReviewState.HUMAN_APPROVED
    overrides = [record for record in coordinator.audit.records() if record.human_override]
    assert len(overrides) == 1
    assert overrides[0].human_override == "human_approved:analyst"
    assert overrides[0].attempt == 2

    with pytest.raises(ReviewStateError):
        coordinator.apply_review(pending.result_id, "reject")


def test_apply_review_rejects_auto_verified(coordinator, old_clauses, new_clauses) -> None:
    report = coordinator.compare(old_clauses, new_clauses)
    verified = _by_new(report)[("3.1",)].result
    with pytest.raises(ReviewStateError):
        coordinator.apply_review(verified.result_id, "approve")
    with pytest.raises(KeyError):
        coordinator.apply_review("missing", "approve")


def test_reviewed_result_survives_rerun(coordinator, old_clauses, new_clauses) -> None:
    report = coordinator.compare(old_clauses, new_clauses)
    pending = _by_new(report)[("1.2",)].result
    coordinator.apply_review(pending.result_id, "reject")
    rerun = coordinator.compare(old_clauses, new_clauses)
    assert _by_new(rerun)[("1.2",)].result.review_state == ReviewState.HUMAN_REJECTED


def test_config_change_applies_to_next_run(embedder, old_clauses, new_clauses) -> None:
    registry = ConfigRegistry(config=ComparisonConfig())
    coordinator = PipelineCoordinator(registry, embedder=embedder)
    first = coordinator.compare(old_clauses, new_clauses)
    registry.update(similarity_threshold=0.999, boost_bonus=0.0)
    second = coordinator.compare(old_clauses, new_clauses)
    assert first.config_version == 1
    assert second.config_version == 2
    assert second.summary["total_added"] > first.summary["total_added"]


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def test_summary_is_pure_function_of_matches() -> None:
    matches = [
        MatchEntry(alignment=ResolvedAlignment(change_type=ChangeType.ADDED, new_clause_ids=["3"])),
        MatchEntry(alignment=ResolvedAlignment(change_type=ChangeType.REMOVED, old_clause_ids=["2"])),
        MatchEntry(
            alignment=ResolvedAlignment(change_type=ChangeType.UNCHANGED, old_clause_ids=["1"], new_clause_ids=["1"])
        ),
    ]
    summary = build_summary(matches)
    assert summary == build_summary(list(matches))
    assert summary["total_added"] == 1
    assert summary["total_removed"] == 1
    assert summary["total_unchanged"] == 1
    assert summary["total_merged"] == 0
    assert summary["requires_review"] == 0


def test_highlights_are_bounded_and_neutral(coordinator, old_clauses, new_clauses) -> None:
    report = coordinator.compare(old_clauses, new_clauses)
    bullets = report.summary["highlights"]
    assert 1 <= len(bullets) <= 5
    assert bullets[0].startswith("Modified clause 1.")
    assert "high risk" in bullets[0]
    assert summarise_matches([]) == ["No material clause changes detected"]


def test_oversized_confidence_falls_back_instead_of_failing_run(embedder, old_clauses, new_clauses) -> None:
    oracle = ScriptedOracle([valid_response(confidence=10**400)])
    coordinator = PipelineCoordinator(ComparisonConfig(max_retries=1), embedder=embedder, oracle=oracle)
    try:
        report = coordinator.compare(old_clauses, new_clauses)
    finally:
        coordinator.close()
    compared = [entry.result for entry in report.matches if entry.result]
    assert len(compared) == 3
    assert {result.provenance.source for result in compared} == {ResultSource.FALLBACK}
    outcomes = {record.validation_outcome for record in report.audit_records if record.state == "MODEL_CALLED"}
    assert "schema_violation:confidence" in outcomes


class VersionlessOracle:
    """Oracle whose version lookup fails with a non-library error."""

    @property
    def model_version(self) -> str:
        raise RuntimeError("model registry offline")

    def compare(self, old_text, new_text, metadata, hint):
        return valid_response()


def test_unexpected_pair_error_becomes_warning(embedder, old_clauses, new_clauses) -> None:
    coordinator = PipelineCoordinator(ComparisonConfig(), embedder=embedder, oracle=VersionlessOracle())
    try:
        report = coordinator.compare(old_clauses, new_clauses)
    finally:
        coordinator.close()
    assert all(entry.result is None for entry in report.matches)
    failures = [warning for warning in report.warnings if "RuntimeError: model registry offline" in warning]
    assert len(failures) == 3
    assert len(report.matches) == 4
