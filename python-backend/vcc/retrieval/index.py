"""Nearest-neighbour lookup over old-version clause vectors."""

from __future__ import annotations

from typing import Dict, List, Protocol, Sequence, Tuple

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from ..errors import InputError


class NeighborIndex(Protocol):
    def query(self, vector: Sequence[float], k: int) -> List[Tuple[str, float]]:
        ...


class InMemoryNeighborIndex:
    """Brute-force cosine index with deterministic tie ordering."""

    def __init__(self, vectors: Dict[str, Sequence[float]]) -> None:
        self._ids = sorted(vectors)
        if self._ids:
            self._matrix = np.asarray([vectors[clause_id] for clause_id in self._ids], dtype=np.float64)
        else:
            self._matrix = np.zeros((0, 0))

    def __len__(self) -> int:
        return len(self._ids)

    def query(self, vector: Sequence[float], k: int) -> List[Tuple[str, float]]:
        if not self._ids or k <= 0:
            return []
        query = np.asarray([vector], dtype=np.float64)
        if query.shape[1] != self._matrix.shape[1]:
            raise InputError(
                f"query dimension {query.shape[1]} != index dimension {self._matrix.shape[1]}"
            )
        similarities = cosine_similarity(query, self._matrix)[0]
        distances = np.round(1.0 - similarities, 12)
        # ids are pre-sorted, so a stable sort on distance breaks ties by id
        order = np.argsort(distances, kind="stable")[:k]
        return [(self._ids[int(i)], float(distances[int(i)])) for i in order]
