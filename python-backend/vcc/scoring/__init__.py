"""Similarity scoring for clause candidates."""

from .similarity import SimilarityScore, cosine_score, lexical_score, score

__all__ = ["SimilarityScore", "cosine_score", "lexical_score", "score"]
