"""Persistence for the audit trail and finalized comparison results."""

from .audit_store import AuditSink, AuditTrail, MemoryAuditSink, SQLiteAuditSink
from .review_store import ReviewRegistry

__all__ = [
    "AuditSink",
    "AuditTrail",
    "MemoryAuditSink",
    "ReviewRegistry",
    "SQLiteAuditSink",
]
