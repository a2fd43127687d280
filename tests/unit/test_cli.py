"""Unit tests for the command-line interface."""

import json
from unittest.mock import MagicMock

import pytest
import yaml
from click.testing import CliRunner

from parley.cli.main import EventRenderer, ParleyApplication, cli
from parley.models.agent_response import ActionKind
from parley.models.planning_session import Party
from parley.models.session_event import SessionEvent
from parley.services.negotiation_engine import NegotiationEngine
from parley.services.session_reducer import SessionState


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """A config file that logs under tmp_path, with no host environment leaking in."""
    for name in ("OPENROUTER_API_KEY", "PARLEY_MAX_ROUNDS", "PARLEY_PORT", "PARLEY_CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        "logging": {"directory": str(tmp_path / "logs")},
        "negotiation": {"max_rounds": 4, "turn_delay_seconds": 0},
    }))
    return str(path)


class TestConfigCommands:
    """Test validate and export-config."""

    def test_validate_reports_missing_key(self, config_file):
        """Test validation succeeds with a warning for the missing key."""
        result = CliRunner().invoke(cli, ["--config", config_file, "validate"])

        assert result.exit_code == 0
        assert "Max rounds: 4" in result.output
        assert "API key configured: no" in result.output
        assert "OPENROUTER_API_KEY" in result.output

    def test_validate_invalid_file(self, tmp_path):
        """Test a schema violation exits non-zero."""
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"negotiation": {"max_rounds": 0}}))

        result = CliRunner().invoke(cli, ["--config", str(path), "validate"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_export_config_omits_api_key(self, config_file, tmp_path, monkeypatch):
        """Test exported configuration never contains the API key."""
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-secret")
        output = tmp_path / "export.yaml"

        result = CliRunner().invoke(cli, ["--config", config_file, "export-config", "-o", str(output)])

        assert result.exit_code == 0
        exported = yaml.safe_load(output.read_text())
        assert exported["negotiation"]["max_rounds"] == 4
        assert "api_key" not in exported["provider"]
        assert "sk-secret" not in output.read_text()

    def test_version(self):
        """Test the version option."""
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "parley" in result.output


class TestNegotiateCommand:
    """Test the negotiate command end to end in process."""

    def test_missing_api_key(self, config_file):
        """Test an in-process negotiation needs an API key."""
        result = CliRunner().invoke(cli, ["--config", config_file, "negotiate", "p", "-a", "m1", "-b", "m2"])

        assert result.exit_code == 1
        assert "API key not configured" in result.output

    def test_json_event_output(self, config_file, scripted_provider, launch_responses, monkeypatch):
        """Test events are printed one JSON object per line."""
        provider = scripted_provider(launch_responses)

        def engine(self):
            return NegotiationEngine(provider, api_key="k", turn_delay_seconds=0, audit_logger=MagicMock())

        monkeypatch.setattr(ParleyApplication, "engine", engine)

        result = CliRunner().invoke(
            cli, ["--config", config_file, "negotiate", "Plan a launch", "-a", "m1", "-b", "m2", "-f", "json"]
        )

        assert result.exit_code == 0
        records = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
        lines = [r for r in records if set(r) == {"type", "data"}]
        assert lines[0]["type"] == "thinking"
        assert lines[-1] == {"type": "agreed", "data": {"plan": "Launch v1 with rollback", "rounds": 2}}

    def test_error_exit_code(self, config_file, scripted_provider, monkeypatch):
        """Test a failed negotiation exits non-zero."""
        provider = scripted_provider([], fail_at=0)

        def engine(self):
            return NegotiationEngine(provider, api_key="k", turn_delay_seconds=0, audit_logger=MagicMock())

        monkeypatch.setattr(ParleyApplication, "engine", engine)

        result = CliRunner().invoke(cli, ["--config", config_file, "negotiate", "p", "-a", "m1", "-b", "m2"])

        assert result.exit_code == 1


class TestEventRenderer:
    """Test terminal rendering of events."""

    def test_text_rendering(self, capsys):
        """Test each event kind renders a readable line."""
        render = EventRenderer("text")
        state = SessionState()

        render(SessionEvent.turn_started(Party.AGENT_A, "agent-a-1"), state)
        render(SessionEvent.content_delta(Party.AGENT_A, "Ship it", "agent-a-1"), state)
        render(SessionEvent.action_classified(Party.AGENT_A, ActionKind.PROPOSE_PLAN, "agent-a-1"), state)
        render(SessionEvent.round_count(1), state)
        render(SessionEvent.agreement_reached("Ship it", 1), state)

        out = capsys.readouterr().out
        assert "[Agent A]" in out
        assert "Ship it" in out
        assert "Round 1" in out
        assert "Agreement reached after 1 rounds" in out

    def test_errors_go_to_stderr(self, capsys):
        """Test error events are written to stderr."""
        EventRenderer("text")(SessionEvent.failed("boom"), SessionState())

        assert "Error: boom" in capsys.readouterr().err
