"""Embedding lookup, neighbour search and candidate generation."""

from .candidates import generate_candidates
from .embeddings import EmbeddingCache, EmbeddingProvider, TfidfEmbeddingProvider, embed_clauses
from .index import InMemoryNeighborIndex, NeighborIndex

__all__ = [
    "EmbeddingCache",
    "EmbeddingProvider",
    "InMemoryNeighborIndex",
    "NeighborIndex",
    "TfidfEmbeddingProvider",
    "embed_clauses",
    "generate_candidates",
]
