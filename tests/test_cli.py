"""Tests for the CLI."""

import json

import pytest

from nav_actions.cli import ActionsCLI, main
from nav_actions.core.audit import AuditLog


@pytest.fixture
def snapshot_file(tmp_path):
    path = tmp_path / "snapshot.json"
    path.write_text(
        json.dumps(
            {
                "entities": [
                    {"entity_type": "campaign", "entity_id": "C1", "status": "ENABLED"},
                    {"entity_type": "campaign", "entity_id": "C2", "status": "PAUSED"},
                ]
            }
        )
    )
    return str(path)


def write_json(tmp_path, name, data):
    path = tmp_path / name
    path.write_text(json.dumps(data))
    return str(path)


class TestCheck:
    def test_allowed_action_exits_zero(self, tmp_path, capsys):
        action = write_json(tmp_path, "a.json", {"action_type": "enable_entity", "entity_type": "campaign", "entity_id": "C2"})
        assert main(["check", "--input", action]) == 0
        assert "Allowed" in capsys.readouterr().out

    def test_blocked_action_exits_one(self, tmp_path, snapshot_file, capsys):
        action = write_json(tmp_path, "a.json", {"action_type": "pause_entity", "entity_type": "campaign", "entity_id": "C1"})
        assert main(["check", "--input", action, "--snapshot", snapshot_file]) == 1
        assert "LAST_ACTIVE_CAMPAIGN" in capsys.readouterr().out

    def test_config_overrides_apply(self, tmp_path, snapshot_file, capsys):
        action = write_json(tmp_path, "a.json", {"action_type": "pause_entity", "entity_type": "campaign", "entity_id": "C1"})
        config = tmp_path / "guardrails.yaml"
        config.write_text("accounts:\n  '123':\n    allow_pause_all_campaigns: true\n")
        code = main(["check", "--input", action, "--snapshot", snapshot_file, "--config", str(config), "--account", "123", "--json"])
        assert code == 0
        result = json.loads(capsys.readouterr().out)
        assert result["warnings"][0]["code"] == "LAST_ACTIVE_CAMPAIGN"

    def test_batch_input(self, tmp_path, capsys):
        batch = [{"action_type": "pause_entity", "entity_type": "keyword", "entity_id": f"K{i}"} for i in range(30)]
        path = write_json(tmp_path, "batch.json", batch)
        assert main(["check", "--input", path]) == 1
        assert "BULK_SIZE_EXCEEDED" in capsys.readouterr().out

    def test_invalid_action_exits_two(self, tmp_path, capsys):
        path = write_json(tmp_path, "a.json", {"action_type": "nope"})
        assert main(["check", "--input", path]) == 2
        assert "Error" in capsys.readouterr().err

    def test_missing_file(self, capsys):
        assert ActionsCLI().run_check("/no/such/file.json") == 2


def test_audit_command_prints_page(tmp_path, capsys):
    url = f"sqlite:///{tmp_path / 'audit.db'}"
    AuditLog(url).record(
        {
            "action_type": "pause_entity",
            "entity_type": "campaign",
            "entity_id": "C1",
            "before_value": "ENABLED",
            "after_value": "PAUSED",
            "status": "success",
        }
    )
    assert main(["audit", "--db", url, "--entity-id", "C1"]) == 0
    page = json.loads(capsys.readouterr().out)
    assert page["total"] == 1
    assert page["items"][0]["after_value"] == "PAUSED"


def test_schema_command(tmp_path, capsys):
    assert main(["schema", "guardrail-config"]) == 0
    schema = json.loads(capsys.readouterr().out)
    assert "max_bulk_action_count" in schema["properties"]

    out = tmp_path / "schemas" / "action.json"
    assert main(["schema", "action", "--output", str(out)]) == 0
    assert out.exists()


def test_no_command_prints_help(capsys):
    assert main([]) == 1
