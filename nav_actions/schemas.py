from __future__ import annotations
import json
from typing import Any, Callable, Dict

# Canonical models are defined in core; import and re-export them here for convenience
from nav_actions.core.actions import Action, action_json_schema  # noqa: F401
from nav_actions.core.audit import AuditLogEntry
from nav_actions.core.config import GuardrailConfig
from nav_actions.core.rules import GuardrailResult

SCHEMAS: Dict[str, Callable[[], Dict[str, Any]]] = {
    "action": action_json_schema,
    "audit-entry": AuditLogEntry.model_json_schema,
    "guardrail-config": GuardrailConfig.model_json_schema,
    "guardrail-result": GuardrailResult.model_json_schema,
}


def export_schema(name: str) -> Dict[str, Any]:
    try:
        return SCHEMAS[name]()
    except KeyError:
        raise ValueError(f"Unknown schema '{name}'. Available: {', '.join(sorted(SCHEMAS))}")


if __name__ == "__main__":
    print(json.dumps(export_schema("action"), indent=2, default=str))
