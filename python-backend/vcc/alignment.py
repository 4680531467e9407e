"""Alignment resolution: candidate lists to a consistent clause partition."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

import structlog

from .config_loader import ComparisonConfig
from .errors import AlignmentError
from .models_vcc import CandidateMatch, ChangeType, Clause, ResolvedAlignment
from .scoring.similarity import normalise_text

logger = structlog.get_logger(__name__)

Edge = Tuple[str, str]  # (new_clause_id, old_clause_id)


@dataclass
class _Attachment:
    score: float
    member_id: str
    side: str  # "old" or "new"


@dataclass
class _Group:
    old_id: str
    new_id: str
    core_score: float
    attached: List[_Attachment] = field(default_factory=list)

    @property
    def old_ids(self) -> List[str]:
        return [self.old_id] + [a.member_id for a in self.attached if a.side == "old"]

    @property
    def new_ids(self) -> List[str]:
        return [self.new_id] + [a.member_id for a in self.attached if a.side == "new"]

    def mean_score(self) -> float:
        scores = [self.core_score] + [a.score for a in self.attached]
        return sum(scores) / len(scores)


def build_edges(
    candidates: Mapping[str, Sequence[CandidateMatch]],
    old_ids: Iterable[str],
    new_ids: Iterable[str],
    threshold: float,
) -> Dict[Edge, float]:
    """Collect surviving candidate edges between known clauses."""

    known_old = set(old_ids)
    known_new = set(new_ids)
    edges: Dict[Edge, float] = {}
    for new_id, matches in candidates.items():
        if new_id not in known_new:
            continue
        for match in matches:
            old_id = match.old_clause_id
            if old_id is None or old_id not in known_old:
                continue
            if match.combined_score < threshold:
                continue
            key = (new_id, old_id)
            edges[key] = max(edges.get(key, 0.0), match.combined_score)
    return edges


def _edge_order(item: Tuple[Edge, float]) -> Tuple[float, str, str]:
    (new_id, old_id), weight = item
    return (-weight, new_id, old_id)


def _greedy_assign(
    ordered: List[Tuple[Edge, float]],
) -> Tuple[List[_Group], Dict[str, _Group], Dict[str, _Group], List[Tuple[Edge, float]]]:
    groups: List[_Group] = []
    by_old: Dict[str, _Group] = {}
    by_new: Dict[str, _Group] = {}
    leftovers: List[Tuple[Edge, float]] = []
    for (new_id, old_id), weight in ordered:
        if new_id in by_new or old_id in by_old:
            leftovers.append(((new_id, old_id), weight))
            continue
        group = _Group(old_id=old_id, new_id=new_id, core_score=weight)
        groups.append(group)
        by_old[old_id] = group
        by_new[new_id] = group
    return groups, by_old, by_new, leftovers


def _grow_groups(
    leftovers: List[Tuple[Edge, float]],
    by_old: Dict[str, _Group],
    by_new: Dict[str, _Group],
) -> None:
    """Attach unmatched clauses to matched neighbours, never many-to-many."""

    for (new_id, old_id), weight in leftovers:
        old_group = by_old.get(old_id)
        new_group = by_new.get(new_id)
        if new_group is None and old_group is not None and len(old_group.old_ids) == 1:
            old_group.attached.append(_Attachment(score=weight, member_id=new_id, side="new"))
            by_new[new_id] = old_group
        elif old_group is None and new_group is not None and len(new_group.new_ids) == 1:
            new_group.attached.append(_Attachment(score=weight, member_id=old_id, side="old"))
            by_old[old_id] = new_group


def _promote_or_shrink(
    groups: List[_Group],
    by_old: Dict[str, _Group],
    by_new: Dict[str, _Group],
    merge_split_threshold: float,
) -> None:
    for group in groups:
        while group.attached and group.mean_score() < merge_split_threshold:
            # weakest edge goes first; on ties the higher id is released
            lowest = min(a.score for a in group.attached)
            weakest = max(
                (a for a in group.attached if a.score == lowest),
                key=lambda a: a.member_id,
            )
            group.attached.remove(weakest)
            if weakest.side == "new":
                by_new.pop(weakest.member_id, None)
            else:
                by_old.pop(weakest.member_id, None)


def _classify_pair(old: Clause, new: Clause, score: float, identical_cutoff: float) -> ChangeType:
    if normalise_text(old.text) != normalise_text(new.text):
        return ChangeType.MODIFIED
    if list(old.section_path) != list(new.section_path):
        return ChangeType.RELOCATED
    if score >= identical_cutoff:
        return ChangeType.UNCHANGED
    return ChangeType.MODIFIED


def resolve_alignments(
    old_clauses: Sequence[Clause],
    new_clauses: Sequence[Clause],
    candidates: Mapping[str, Sequence[CandidateMatch]],
    config: ComparisonConfig,
) -> List[ResolvedAlignment]:
    """Resolve candidate lists into a partition of both clause sets.

    The result is independent of the order of ``candidates`` and of the
    clause sequences: every decision is taken in a total order on
    (score, new id, old id).
    """

    if not old_clauses and not new_clauses:
        raise AlignmentError("cannot align two empty document versions")

    old_by_id = {clause.id: clause for clause in old_clauses}
    new_by_id = {clause.id: clause for clause in new_clauses}
    if len(old_by_id) != len(old_clauses) or len(new_by_id) != len(new_clauses):
        raise AlignmentError("duplicate clause ids within a document version")

    edges = build_edges(candidates, old_by_id, new_by_id, config.similarity_threshold)
    ordered = sorted(edges.items(), key=_edge_order)

    groups, by_old, by_new, leftovers = _greedy_assign(ordered)
    _grow_groups(leftovers, by_old, by_new)
    _promote_or_shrink(groups, by_old, by_new, config.merge_split_threshold)

    alignments: List[ResolvedAlignment] = []
    for group in groups:
        if group.attached:
            old_ids, new_ids = group.old_ids, group.new_ids
            change_type = ChangeType.SPLIT if len(old_ids) == 1 else ChangeType.MERGED
            alignments.append(
                ResolvedAlignment(
                    change_type=change_type,
                    old_clause_ids=old_ids,
                    new_clause_ids=new_ids,
                    score=round(group.mean_score(), 6),
                )
            )
            continue
        old, new = old_by_id[group.old_id], new_by_id[group.new_id]
        alignments.append(
            ResolvedAlignment(
                change_type=_classify_pair(old, new, group.core_score, config.identical_cutoff),
                old_clause_ids=[old.id],
                new_clause_ids=[new.id],
                score=round(group.core_score, 6),
            )
        )

    for new_id in new_by_id:
        if new_id not in by_new:
            alignments.append(ResolvedAlignment(change_type=ChangeType.ADDED, new_clause_ids=[new_id]))
    for old_id in old_by_id:
        if old_id not in by_old:
            alignments.append(ResolvedAlignment(change_type=ChangeType.REMOVED, old_clause_ids=[old_id]))

    alignments.sort(key=lambda alignment: alignment.sort_key())
    check_partition(alignments, old_by_id, new_by_id)
    logger.debug(
        "alignment resolved",
        edges=len(edges),
        alignments=len(alignments),
        groups=len(groups),
    )
    return alignments


def check_partition(
    alignments: Sequence[ResolvedAlignment],
    old_ids: Iterable[str],
    new_ids: Iterable[str],
) -> None:
    """Raise :class:`AlignmentError` unless every id appears exactly once."""

    seen_old: List[str] = [clause_id for a in alignments for clause_id in a.old_clause_ids]
    seen_new: List[str] = [clause_id for a in alignments for clause_id in a.new_clause_ids]
    if sorted(seen_old) != sorted(old_ids) or sorted(seen_new) != sorted(new_ids):
        raise AlignmentError("alignment does not partition the input clauses")
