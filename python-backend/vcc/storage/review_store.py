"""Registry of finalized results and their human-review transitions."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from ..errors import ReviewStateError
from ..models_vcc import ComparisonResult, ReviewState

REVIEW_DECISIONS = {
    "approve": ReviewState.HUMAN_APPROVED,
    "approved": ReviewState.HUMAN_APPROVED,
    ReviewState.HUMAN_APPROVED.value: ReviewState.HUMAN_APPROVED,
    "reject": ReviewState.HUMAN_REJECTED,
    "rejected": ReviewState.HUMAN_REJECTED,
    ReviewState.HUMAN_REJECTED.value: ReviewState.HUMAN_REJECTED,
}


def parse_decision(decision: str | ReviewState) -> ReviewState:
    if isinstance(decision, ReviewState):
        key = decision.value
    else:
        key = str(decision).strip().lower()
    state = REVIEW_DECISIONS.get(key)
    if state is None:
        raise ReviewStateError(f"unknown review decision: {decision!r}")
    return state


class ReviewRegistry:
    """Holds finalized results keyed by ``result_id``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: Dict[str, ComparisonResult] = {}

    def register(self, results: Iterable[ComparisonResult]) -> None:
        with self._lock:
            for result in results:
                self._results.setdefault(result.result_id, result)

    def get(self, result_id: str) -> Optional[ComparisonResult]:
        with self._lock:
            return self._results.get(result_id)

    def pending_review(self) -> List[ComparisonResult]:
        with self._lock:
            return [
                result
                for result in self._results.values()
                if result.review_state == ReviewState.HUMAN_REVIEW_REQUIRED
            ]

    def transition(self, result_id: str, decision: str | ReviewState) -> ComparisonResult:
        """Move a result out of ``human_review_required``.

        Raises ``KeyError`` for unknown ids and :class:`ReviewStateError` for
        any other source state.
        """

        target = parse_decision(decision)
        with self._lock:
            result = self._results.get(result_id)
            if result is None:
                raise KeyError(result_id)
            if result.review_state != ReviewState.HUMAN_REVIEW_REQUIRED:
                raise ReviewStateError(
                    f"result {result_id} is {result.review_state.value}, not awaiting review"
                )
            updated = result.model_copy(update={"review_state": target})
            self._results[result_id] = updated
            return updated
