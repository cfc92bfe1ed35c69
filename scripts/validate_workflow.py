#!/usr/bin/env python3
"""Validate a workflow graph snapshot from a JSON file.

Usage:
    python scripts/validate_workflow.py graph.json
    python scripts/validate_workflow.py graph.json --stage PUBLISH
    python scripts/validate_workflow.py graph.json --json

Exit status is 0 when the graph has no ERROR issues, 1 when it is invalid
and 2 when the file cannot be read.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def load_graph(path: Path) -> dict:
    with path.open(encoding="utf-8") as handle:
        return json.load(handle)


def run(path: Path, stage: str, as_json: bool) -> int:
    from decisionflow.service.graph_validator import GraphValidator

    try:
        graph = load_graph(path)
    except (OSError, json.JSONDecodeError) as exc:
        print(f"Error: cannot read {path}: {exc}", file=sys.stderr)
        return 2

    result = GraphValidator().validate(graph, stage)

    if as_json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    else:
        label = "valid" if result.valid else "INVALID"
        print(f"{path}: {label} at {stage} ({len(result.issues)} issues)")
        for issue in result.issues:
            where = issue.node_id or issue.edge_id
            location = f" [{where}]" if where else ""
            print(f"  {issue.severity.value:5} {issue.code}{location}: {issue.message}")
    return 0 if result.valid else 1


def main():
    parser = argparse.ArgumentParser(
        description="Validate a workflow graph snapshot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("path", type=Path, help="JSON file holding the graph snapshot")
    parser.add_argument(
        "--stage",
        choices=["SAVE", "PUBLISH"],
        default="SAVE",
        help="Validation stage (PUBLISH adds release checks)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="as_json",
        help="Print the result as JSON",
    )
    args = parser.parse_args()
    sys.exit(run(args.path, args.stage, args.as_json))


if __name__ == "__main__":
    main()
