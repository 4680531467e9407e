from pathlib import Path
import copy
import sys
import threading
import time
from typing import Any, Dict, List, Sequence

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "python-backend"))

from vcc.config_loader import ComparisonConfig
from vcc.errors import AuditWriteError
from vcc.models_vcc import AuditRecord, Clause
from vcc.scoring.similarity import tokenise

VOCABULARY = [
    "company", "collect", "user", "data", "analytics", "compliance",
    "delete", "months", "notices", "writing", "delivered", "copy",
    "records", "request", "payment", "due", "interest", "late",
]


class VocabularyEmbedder:
    """Bag-of-words vectors over a fixed vocabulary."""

    def __init__(self, vocabulary: Sequence[str] = VOCABULARY) -> None:
        self.vocabulary = list(vocabulary)
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def embed(self, text: str) -> List[float]:
        with self._lock:
            self.calls.append(text)
        tokens = tokenise(text)
        return [float(tokens.count(word)) for word in self.vocabulary]


def valid_response(**overrides: Any) -> Dict[str, Any]:
    response: Dict[str, Any] = {
        "change_type": "modified",
        "obligation_changes": [],
        "permission_changes": [],
        "numeric_changes": [],
        "risk_level": "low",
        "human_summary": "The clause wording changed.",
        "confidence": 0.9,
    }
    response.update(overrides)
    return response


class ScriptedOracle:
    """Returns queued responses in order; the last one repeats."""

    model_version = "scripted-1"

    def __init__(self, responses: Sequence[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def compare(self, old_text: str, new_text: str, metadata: Dict[str, Any], hint: Dict[str, Any]) -> Any:
        self.calls.append({"old": old_text, "new": new_text, "metadata": metadata, "hint": hint})
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return copy.deepcopy(item)


class EchoOracle:
    """Answers every pair consistently with the alignment it is given."""

    model_version = "echo-1"

    def __init__(self, confidence: float = 0.9) -> None:
        self.confidence = confidence
        self.calls = 0
        self._lock = threading.Lock()

    def compare(self, old_text: str, new_text: str, metadata: Dict[str, Any], hint: Dict[str, Any]) -> Any:
        with self._lock:
            self.calls += 1
        return valid_response(change_type=metadata["change_type"], confidence=self.confidence)


class SlowOracle:
    model_version = "slow-1"

    def __init__(self, delay_s: float) -> None:
        self.delay_s = delay_s

    def compare(self, old_text: str, new_text: str, metadata: Dict[str, Any], hint: Dict[str, Any]) -> Any:
        time.sleep(self.delay_s)
        return valid_response()


class FlakySink:
    """Fails the first ``failures`` writes, then stores records."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.written: List[AuditRecord] = []

    def write(self, record: AuditRecord) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise AuditWriteError("sink unavailable")
        self.written.append(record)


def clause(clause_id: str, text: str, version: str, section: Sequence[str] = ()) -> Clause:
    return Clause(id=clause_id, text=text, section_path=list(section), doc_version=version)


OLD_TEXTS = {
    "1.1": "The company may collect user data for analytics.",
    "1.2": "The company must delete user data after 6 months.",
    "2.1": "Notices are delivered in writing.",
}

NEW_TEXTS = {
    "1.1": "The company must collect user data for analytics and compliance.",
    "1.2": "The company must delete user data after 12 months.",
    "2.1": "Notices are delivered in writing.",
    "3.1": "A copy of records is available on request.",
}


@pytest.fixture
def config() -> ComparisonConfig:
    return ComparisonConfig()


@pytest.fixture
def old_clauses() -> List[Clause]:
    return [
        clause("1.1", OLD_TEXTS["1.1"], "v1", ["Data"]),
        clause("1.2", OLD_TEXTS["1.2"], "v1", ["Data"]),
        clause("2.1", OLD_TEXTS["2.1"], "v1", ["Notices"]),
    ]


@pytest.fixture
def new_clauses() -> List[Clause]:
    return [
        clause("1.1", NEW_TEXTS["1.1"], "v2", ["Data"]),
        clause("1.2", NEW_TEXTS["1.2"], "v2", ["Data"]),
        clause("2.1", NEW_TEXTS["2.1"], "v2", ["Notices"]),
        clause("3.1", NEW_TEXTS["3.1"], "v2", ["Access"]),
    ]


@pytest.fixture
def embedder() -> VocabularyEmbedder:
    return VocabularyEmbedder()
