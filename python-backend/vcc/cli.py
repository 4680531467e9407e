"""Command line helpers for the Versioned Clause Comparer."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, List, Optional

from vcc.config_loader import ConfigRegistry
from vcc.models_vcc import Clause
from vcc.oracle import OpenAISemanticOracle
from vcc.pipeline import PipelineCoordinator
from vcc.storage import AuditTrail, SQLiteAuditSink


def load_clauses(path: Path, default_version: Optional[str] = None) -> List[Clause]:
    """Read clauses from a JSON file.

    Accepts either a bare list of clause objects or an object of the form
    ``{"doc_version": ..., "clauses": [...]}``; the file stem is used as the
    version when none is given.
    """

    data = json.loads(path.read_text(encoding="utf-8"))
    version = default_version or path.stem
    if isinstance(data, dict):
        version = str(data.get("doc_version", version))
        data = data.get("clauses", [])
    clauses: List[Clause] = []
    for entry in data:
        clauses.append(
            Clause(
                id=str(entry["id"]),
                text=entry.get("text", ""),
                section_path=list(entry.get("section_path", [])),
                doc_version=str(entry.get("doc_version", version)),
            )
        )
    return clauses


def _write_output(result: Any, path: Path | None) -> None:
    if not path:
        print(json.dumps(result, indent=2))
        return
    path.write_text(json.dumps(result, indent=2))


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Versioned Clause Comparer CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    compare_parser = subparsers.add_parser("compare", help="Compare two versions of a document")
    compare_parser.add_argument("old", type=Path, help="Clause JSON of the earlier version")
    compare_parser.add_argument("new", type=Path, help="Clause JSON of the later version")
    compare_parser.add_argument(
        "--json",
        dest="json_output",
        type=Path,
        help="Write the comparison report to a JSON file",
    )
    compare_parser.add_argument(
        "--oracle",
        choices=["none", "openai"],
        default="none",
        help="Semantic-diff oracle; 'none' runs the rule tier only",
    )
    compare_parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Override the similarity threshold for this run",
    )
    compare_parser.add_argument("--config", type=Path, default=None, help="Path to a config YAML file")
    compare_parser.add_argument("--audit-db", type=Path, default=None, help="SQLite file for audit records")

    args = parser.parse_args(argv)

    if args.command == "compare":
        registry = ConfigRegistry(path=args.config)
        if args.threshold is not None:
            registry.update(similarity_threshold=args.threshold)
        audit = AuditTrail(SQLiteAuditSink(args.audit_db)) if args.audit_db else AuditTrail()
        oracle = OpenAISemanticOracle() if args.oracle == "openai" else None
        coordinator = PipelineCoordinator(registry, oracle=oracle, audit=audit)
        try:
            report = coordinator.compare(load_clauses(args.old, "old"), load_clauses(args.new, "new"))
        finally:
            coordinator.close()
        _write_output(report.model_dump(mode="json"), args.json_output)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
