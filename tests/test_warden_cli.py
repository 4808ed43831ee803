"""Smoke tests for the operator CLI."""

import importlib.util
from pathlib import Path

import pytest
import yaml

from ghost_core.audit_trail import AuditLog
from ghost_core.models import Event, Intent, Role
from ghost_core.warden import Warden

CLI_PATH = Path(__file__).parent.parent / "scripts" / "warden_cli.py"


@pytest.fixture
def cli():
    spec = importlib.util.spec_from_file_location("warden_cli", CLI_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def config_file(tmp_path, raw_config):
    data = dict(raw_config)
    data["state_dir"] = str(tmp_path / "state")
    path = tmp_path / "ghost.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture
def seeded(config_file, make_config):
    config = make_config()
    warden = Warden(AuditLog(config.audit_log_path), ttl_seconds=config.approval_ttl_seconds)
    event = Event.create("ban @spammer", actor_id="member-1", actor_role=Role.MEMBER, source="discord")
    intent = Intent(label="discord/ban", confidence=0.97, target_handler="Sentinel",
                    is_dangerous=True, requires_review=True, reasons=("dangerous action",))
    return warden.submit(event, intent)


def test_pending_lists_queued_requests(cli, config_file, seeded, capsys):
    cli.main(["--config", str(config_file), "pending"])

    out = capsys.readouterr().out
    assert seeded.id in out
    assert "discord/ban" in out


def test_show_unknown_request(cli, config_file, capsys):
    cli.main(["--config", str(config_file), "show", "APR-0042"])

    assert "not found" in capsys.readouterr().out


def test_show_request_details(cli, config_file, seeded, capsys):
    cli.main(["--config", str(config_file), "show", seeded.id])

    out = capsys.readouterr().out
    assert "pending" in out
    assert "Sentinel" in out


def test_audit_filters_by_agent(cli, config_file, seeded, capsys):
    cli.main(["--config", str(config_file), "audit", "--agent", "Warden", "--level", "BLOCK"])

    assert "submit" in capsys.readouterr().out


def test_budget_and_empty_replay(cli, config_file, capsys):
    cli.main(["--config", str(config_file), "budget"])
    cli.main(["--config", str(config_file), "replay"])

    out = capsys.readouterr().out
    assert "unlimited" in out
    assert "No escalation attempts found." in out
