"""Error taxonomy for the Versioned Clause Comparer."""

from __future__ import annotations

from typing import List


class VCCError(Exception):
    """Base class for comparer errors."""


class InputError(VCCError):
    """Malformed clause or vector; the affected clause is rejected."""


class ProviderError(VCCError):
    """Embedding provider or neighbour index unavailable for a clause."""


class AlignmentError(VCCError):
    """Degenerate alignment graph. Fatal for the run."""


class ConfigError(VCCError):
    """Corrupt or inconsistent configuration. Fatal for the run."""


class OracleTimeout(VCCError):
    """The semantic-diff oracle did not answer within the configured timeout."""


class SchemaViolation(VCCError):
    """Oracle output is missing fields or carries invalid values."""

    def __init__(self, fields: List[str]) -> None:
        super().__init__(f"schema violation: {', '.join(fields)}")
        self.fields = fields


class ContentViolation(VCCError):
    """Oracle output breaches the content policy."""


class AuditWriteError(VCCError):
    """An audit record could not be written to its sink."""


class ReviewStateError(VCCError):
    """A review decision was applied to a result not awaiting review."""
