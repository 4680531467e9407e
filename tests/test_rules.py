from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "python-backend"))

from conftest import NEW_TEXTS, OLD_TEXTS
from vcc.cues.grammar import Modality, detect_modals, extract_quantities, keyword_counts
from vcc.models_vcc import ChangeType, ResolvedAlignment, RiskLevel
from vcc.rules import describe, run_rule_check

KEYWORDS = ["must", "shall", "required", "prohibited", "penalty", "fine"]


def test_detect_modals_prefers_longest_phrase() -> None:
    statements = detect_modals("The supplier must not disclose customer data.")
    assert len(statements) == 1
    assert statements[0].entity == "supplier"
    assert statements[0].phrase == "must not"
    assert statements[0].modality == Modality.PROHIBITED


def test_extract_quantities_labels_fields() -> None:
    quantities = extract_quantities(
        "Records are retained for 6 months. Liability is capped at $50,000. A 5% fee applies."
    )
    fields = [(q.field, q.value, q.unit) for q in quantities]
    assert ("retention_period", 6.0, "months") in fields
    assert ("monetary_limit", 50000.0, "$") in fields
    assert ("percentage", 5.0, "%") in fields


def test_keyword_counts_are_whole_word() -> None:
    counts = keyword_counts("A fine is payable; refined terms do not count.", ["fine"])
    assert counts == {"fine": 1}


def test_may_to_must_is_obligation_increase() -> None:
    signals = run_rule_check(OLD_TEXTS["1.1"], NEW_TEXTS["1.1"], KEYWORDS)
    assert "obligation_increase:company:may->must" in signals.flags
    assert signals.obligation_reversal
    assert signals.obligation_changes[0].severity == RiskLevel.HIGH
    assert signals.keyword_deltas == {"must": 1}
    assert signals.risk_level == RiskLevel.HIGH


def test_retention_drift_is_high_risk() -> None:
    signals = run_rule_check(OLD_TEXTS["1.2"], NEW_TEXTS["1.2"], KEYWORDS)
    assert len(signals.numeric_changes) == 1
    change = signals.numeric_changes[0]
    assert change.field == "retention_period"
    assert (change.old_value, change.new_value) == (6.0, 12.0)
    assert change.significance == RiskLevel.HIGH
    assert signals.risk_level == RiskLevel.HIGH
    assert "numeric_delta:retention_period:6->12" in signals.flags


def test_equivalent_durations_are_not_a_change() -> None:
    signals = run_rule_check("Notice is given within 30 days.", "Notice is given within 1 month.", KEYWORDS)
    assert signals.numeric_changes == []


def test_small_monetary_change_is_medium() -> None:
    signals = run_rule_check(
        "Liability is capped at $100,000.", "Liability is capped at $110,000.", KEYWORDS
    )
    assert signals.numeric_changes[0].significance == RiskLevel.MEDIUM


def test_added_prohibition_keyword_escalates() -> None:
    signals = run_rule_check(
        "Subcontracting is allowed.", "Subcontracting is prohibited.", KEYWORDS
    )
    assert "keyword_added:prohibited" in signals.flags
    assert signals.risk_level == RiskLevel.HIGH


def test_no_signals_for_identical_text() -> None:
    signals = run_rule_check(OLD_TEXTS["2.1"], OLD_TEXTS["2.1"], KEYWORDS)
    assert signals.flags == []
    assert signals.risk_level == RiskLevel.LOW


def test_permission_change_is_not_an_obligation() -> None:
    signals = run_rule_check("The tenant may sublet.", "The tenant should sublet.", KEYWORDS)
    assert signals.obligation_changes == []
    assert signals.permission_changes[0].entity == "tenant"
    assert signals.risk_level == RiskLevel.LOW


def test_describe_is_neutral_and_references_clauses() -> None:
    alignment = ResolvedAlignment(change_type=ChangeType.MODIFIED, old_clause_ids=["1.2"], new_clause_ids=["1.2"])
    signals = run_rule_check(OLD_TEXTS["1.2"], NEW_TEXTS["1.2"], KEYWORDS)
    text = describe(alignment, signals)
    assert text.startswith("Clause 1.2 was modified as 1.2.")
    assert "retention period changed from 6 to 12 months" in text
    assert "should" not in text.lower()


@pytest.mark.parametrize(
    "change_type, old_ids, new_ids, lead",
    [
        (ChangeType.ADDED, [], ["3.1"], "Clause 3.1 was added."),
        (ChangeType.REMOVED, ["2.4"], [], "Clause 2.4 was removed."),
        (ChangeType.MERGED, ["1", "2"], ["9"], "Clauses 1, 2 were merged into 9."),
    ],
)
def test_describe_leads(change_type, old_ids, new_ids, lead) -> None:
    alignment = ResolvedAlignment(change_type=change_type, old_clause_ids=old_ids, new_clause_ids=new_ids)
    assert describe(alignment, run_rule_check("", "", KEYWORDS)) == lead
