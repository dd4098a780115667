#!/usr/bin/env python3
"""
CLI for nav-actions.

Offline guardrail checks for action payloads, read access to the audit log,
and JSON schema export for integrators.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from nav_actions.core.actions import parse_action
from nav_actions.core.audit import AuditLog, AuditQuery
from nav_actions.core.config import GuardrailConfigStore
from nav_actions.core.errors import CoreError
from nav_actions.core.rules import GuardrailResult, evaluate
from nav_actions.core.snapshot import EntitySnapshot, GuardrailSnapshot
from nav_actions.schemas import SCHEMAS, export_schema


class ActionsCLI:
    """Command implementations; each returns a process exit code."""

    def load_json(self, input_path: str) -> Any:
        """Load JSON from file or stdin."""
        if input_path == "-":
            try:
                return json.load(sys.stdin)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON from stdin: {e}")

        file_path = Path(input_path)
        if not file_path.exists():
            raise ValueError(f"Input file not found: {input_path}")
        try:
            with open(file_path, "r") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in file {input_path}: {e}")

    def load_snapshot(self, snapshot_path: Optional[str]) -> GuardrailSnapshot:
        if not snapshot_path:
            return GuardrailSnapshot()
        raw = self.load_json(snapshot_path)
        entities = raw.get("entities", []) if isinstance(raw, dict) else raw
        return GuardrailSnapshot(entities=tuple(EntitySnapshot.model_validate(e) for e in entities))

    def print_result(self, result: GuardrailResult) -> None:
        if result.allowed:
            print(f"✅ Allowed (risk: {result.risk_level.value})")
        else:
            print(f"❌ Blocked (risk: {result.risk_level.value}):")
            for reason in result.block_reasons:
                print(f"  • [{reason.code}] {reason.message}")
        for warning in result.warnings:
            print(f"  ⚠ [{warning.code}] {warning.message}")

    def run_check(
        self,
        input_path: str,
        snapshot_path: Optional[str] = None,
        config_path: Optional[str] = None,
        account_id: Optional[str] = None,
        ruleset_path: Optional[str] = None,
        as_json: bool = False,
    ) -> int:
        """Evaluate one action (object) or a batch (array). Exit 0 if allowed."""
        try:
            payload = self.load_json(input_path)
            if isinstance(payload, list):
                actions: Any = [parse_action(a) for a in payload]
            else:
                actions = parse_action(payload)
            snapshot = self.load_snapshot(snapshot_path)
            config = GuardrailConfigStore(config_path).get(account_id)
            result = evaluate(actions, snapshot, config, ruleset_path=ruleset_path)
        except (ValueError, OSError, yaml.YAMLError, CoreError, PydanticValidationError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2

        if as_json:
            print(json.dumps(result.model_dump(mode="json"), indent=2))
        else:
            self.print_result(result)
        return 0 if result.allowed else 1

    def run_audit(self, db_url: str, filters: Dict[str, Any]) -> int:
        try:
            query = AuditQuery(**{k: v for k, v in filters.items() if v is not None})
            page = AuditLog(db_url).query(query)
        except (CoreError, PydanticValidationError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2
        print(json.dumps(page.model_dump(mode="json"), indent=2))
        return 0

    def run_schema(self, name: str, output: Optional[str] = None) -> int:
        try:
            schema = export_schema(name)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        text = json.dumps(schema, indent=2, default=str)
        if output:
            Path(output).parent.mkdir(parents=True, exist_ok=True)
            Path(output).write_text(text + "\n", encoding="utf-8")
            print(f"Wrote {name} schema to {output}")
        else:
            print(text)
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="nav-actions CLI for guardrail checks, audit and schemas",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check one action against a snapshot
  nav-actions check --input pause.json --snapshot entities.json

  # Check a batch from stdin with account overrides
  cat batch.json | nav-actions check --config guardrails.yaml --account 123

  # Last 20 failed executions
  nav-actions audit --db sqlite:///audit.db --status failed --limit 20

  # Export the action schema
  nav-actions schema action
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    check = subparsers.add_parser("check", help="Evaluate guardrails for an action or batch")
    check.add_argument("--input", dest="input_path", default="-", help="Action JSON file or '-' for stdin")
    check.add_argument("--snapshot", dest="snapshot_path", help="Entity snapshot JSON file")
    check.add_argument("--config", dest="config_path", help="Guardrail config YAML")
    check.add_argument("--account", dest="account_id", help="Account whose overrides apply")
    check.add_argument("--ruleset", dest="ruleset_path", help="Custom ruleset YAML")
    check.add_argument("--json", dest="as_json", action="store_true", help="Print the raw result as JSON")

    audit = subparsers.add_parser("audit", help="Page through the audit log")
    audit.add_argument("--db", dest="db_url", default="sqlite:///nav_actions_audit.db", help="Audit DB URL")
    audit.add_argument("--entity-id")
    audit.add_argument("--entity-type")
    audit.add_argument("--account-id")
    audit.add_argument("--status", choices=["success", "failed"])
    audit.add_argument("--source", choices=["user", "ai", "rule", "rollback"])
    audit.add_argument("--action-type")
    audit.add_argument("--offset", type=int, default=0)
    audit.add_argument("--limit", type=int, default=50)

    schema = subparsers.add_parser("schema", help="Export a JSON schema")
    schema.add_argument("name", choices=sorted(SCHEMAS))
    schema.add_argument("--output", help="Write to file instead of stdout")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    cli = ActionsCLI()

    if args.command == "check":
        return cli.run_check(
            args.input_path, args.snapshot_path, args.config_path, args.account_id, args.ruleset_path, args.as_json
        )
    if args.command == "audit":
        filters = {
            "entity_id": args.entity_id,
            "entity_type": args.entity_type,
            "account_id": args.account_id,
            "status": args.status,
            "source": args.source,
            "action_type": args.action_type,
            "offset": args.offset,
            "limit": args.limit,
        }
        return cli.run_audit(args.db_url, filters)
    if args.command == "schema":
        return cli.run_schema(args.name, args.output)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
