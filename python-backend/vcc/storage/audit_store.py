"""Append-only audit trail with SQLite and in-memory sinks."""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Optional, Protocol, Set, Tuple

import structlog

from ..errors import AuditWriteError
from ..models_vcc import AuditRecord

logger = structlog.get_logger(__name__)

DEFAULT_FLUSH_ATTEMPTS = 3
DEFAULT_RETAIN = 10_000


def _default_db_path() -> Path:
    env_path = os.environ.get("VCC_AUDIT_DB_PATH")
    if env_path:
        return Path(env_path)
    root = Path(__file__).resolve().parents[1]
    return root / ".data" / "audit.db"


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_records (
            record_id TEXT NOT NULL,
            comparison_key TEXT NOT NULL,
            attempt INTEGER NOT NULL,
            state TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            input_clause_ids TEXT NOT NULL,
            prompt_hash TEXT,
            model_version TEXT,
            raw_response_hash TEXT,
            validation_outcome TEXT NOT NULL,
            human_override TEXT,
            PRIMARY KEY (comparison_key, attempt)
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_audit_timestamp
        ON audit_records (timestamp)
        """
    )


class AuditSink(Protocol):
    def write(self, record: AuditRecord) -> None:
        ...


class MemoryAuditSink:
    """Keeps records in process; de-duplicates on (comparison_key, attempt)."""

    def __init__(self) -> None:
        self._records: List[AuditRecord] = []
        self._keys: Set[Tuple[str, int]] = set()

    def write(self, record: AuditRecord) -> None:
        key = (record.comparison_key, record.attempt)
        if key in self._keys:
            return
        self._keys.add(key)
        self._records.append(record)

    def records(self) -> List[AuditRecord]:
        return list(self._records)


class SQLiteAuditSink:
    """SQLite persistence for audit records."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or _default_db_path()

    def _connect(self) -> sqlite3.Connection:
        _ensure_parent(self.db_path)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        _ensure_schema(conn)
        return conn

    def write(self, record: AuditRecord) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO audit_records (
                        record_id, comparison_key, attempt, state, timestamp,
                        input_clause_ids, prompt_hash, model_version,
                        raw_response_hash, validation_outcome, human_override
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.record_id,
                        record.comparison_key,
                        record.attempt,
                        record.state,
                        record.timestamp.isoformat(),
                        json.dumps(record.input_clause_ids),
                        record.prompt_hash,
                        record.model_version,
                        record.raw_response_hash,
                        record.validation_outcome,
                        record.human_override,
                    ),
                )
        except sqlite3.Error as exc:
            raise AuditWriteError(str(exc)) from exc

    def get_records(self, comparison_key: Optional[str] = None) -> List[AuditRecord]:
        with self._connect() as conn:
            if comparison_key is None:
                rows = conn.execute(
                    "SELECT * FROM audit_records ORDER BY comparison_key ASC, attempt ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_records WHERE comparison_key = ? ORDER BY attempt ASC",
                    (comparison_key,),
                ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def _row_to_record(self, row: sqlite3.Row) -> AuditRecord:
        return AuditRecord(
            record_id=row["record_id"],
            comparison_key=row["comparison_key"],
            attempt=row["attempt"],
            state=row["state"],
            timestamp=row["timestamp"],
            input_clause_ids=json.loads(row["input_clause_ids"]),
            prompt_hash=row["prompt_hash"],
            model_version=row["model_version"],
            raw_response_hash=row["raw_response_hash"],
            validation_outcome=row["validation_outcome"],
            human_override=row["human_override"],
        )


class AuditTrail:
    """Serialises appends to a sink and buffers failed writes.

    A failed write never propagates to the caller. Buffered records are
    retried on the next append and on :meth:`flush`; records still pending
    after a flush put the trail in degraded mode.

    Only the most recent ``retain`` records are kept in memory once the sink
    has accepted them; the sink remains the durable copy. Attempt numbers
    are indexed per comparison key for de-duplication and
    :meth:`attempts_for`.
    """

    def __init__(self, sink: Optional[AuditSink] = None, retain: int = DEFAULT_RETAIN) -> None:
        self.sink: AuditSink = sink or MemoryAuditSink()
        self.retain = retain
        self._lock = threading.Lock()
        self._records: Deque[AuditRecord] = deque()
        self._attempts: Dict[str, Set[int]] = {}
        self._pending: Deque[AuditRecord] = deque()
        self.degraded = False

    def append(self, record: AuditRecord) -> bool:
        """Record an attempt. Returns False if it duplicates an existing one."""

        with self._lock:
            attempts = self._attempts.setdefault(record.comparison_key, set())
            if record.attempt in attempts:
                return False
            attempts.add(record.attempt)
            self._records.append(record)
            self._pending.append(record)
            self._drain()
            self._evict()
            return True

    def _drain(self) -> None:
        while self._pending:
            record = self._pending[0]
            try:
                self.sink.write(record)
            except AuditWriteError as exc:
                logger.warning(
                    "audit write deferred",
                    comparison_key=record.comparison_key,
                    attempt=record.attempt,
                    pending=len(self._pending),
                    error=str(exc),
                )
                return
            self._pending.popleft()

    def _evict(self) -> None:
        # pending records are always the newest, so only written ones go
        written = len(self._records) - len(self._pending)
        excess = min(len(self._records) - self.retain, written)
        for _ in range(max(excess, 0)):
            self._records.popleft()

    def flush(self, attempts: int = DEFAULT_FLUSH_ATTEMPTS) -> bool:
        """Retry buffered writes; returns True when nothing is pending."""

        with self._lock:
            for _ in range(attempts):
                self._drain()
                if not self._pending:
                    self._evict()
                    return True
            self.degraded = True
            logger.error("audit sink degraded", pending=len(self._pending))
            return False

    @property
    def pending(self) -> int:
        return len(self._pending)

    def records(self, comparison_keys: Optional[Set[str]] = None) -> List[AuditRecord]:
        """Retained records in append order, optionally limited to some keys."""

        with self._lock:
            if comparison_keys is None:
                return list(self._records)
            return [record for record in self._records if record.comparison_key in comparison_keys]

    def attempts_for(self, comparison_key: str) -> int:
        with self._lock:
            return len(self._attempts.get(comparison_key, ()))
