"""Core modules must stay free of the outer layers (HTTP, CLI, session)."""

import ast
from pathlib import Path

import pytest

CORE = Path(__file__).parent.parent / "nav_actions" / "core"

FORBIDDEN = (
    "fastapi",
    "nav_actions.service",
    "nav_actions.session",
    "nav_actions.cli",
    "nav_actions.mutation_client",
    "nav_actions.settings",
)


def imported_modules(path: Path):
    tree = ast.parse(path.read_text(), filename=str(path))
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                yield node.lineno, alias.name
        elif isinstance(node, ast.ImportFrom) and node.module and node.level == 0:
            yield node.lineno, node.module


@pytest.mark.parametrize("path", sorted(CORE.glob("*.py")), ids=lambda p: p.name)
def test_core_module_imports(path):
    violations = [
        f"{path.name}:{lineno} imports {module}"
        for lineno, module in imported_modules(path)
        if any(module == f or module.startswith(f + ".") for f in FORBIDDEN)
    ]
    assert violations == []
