from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from crkd import display
from crkd.models import Completion
from crkd.provider import OpenRouterProvider
from crkd.run import build_session, cli, run_agent


@pytest.fixture(autouse=True)
def isolated_config():
    with patch("crkd.config.load_dotenv"), patch("crkd.run.configure_logging"):
        yield

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def test_build_session_wires_collaborators(tmp_path, settings):
    (tmp_path / "src").mkdir()
    agent = build_session(settings, tmp_path)
    context = agent.context

    assert context.root == tmp_path.resolve()
    assert agent.phase_controller is context.phase_controller
    assert agent.phase_controller.conversation is context.conversation
    assert "- src/" in agent.phase_controller.project_info
    assert isinstance(agent.provider, OpenRouterProvider)
    assert context.escalation.tiers == tuple(settings.auto_scale_available_models)
    assert agent.max_rounds == settings.max_rounds
    assert agent.instructions == settings.instructions

def test_build_session_uses_given_provider(tmp_path, settings):
    provider = AsyncMock()
    assert build_session(settings, tmp_path, provider=provider).provider is provider

def test_build_session_conversation_log(tmp_path, settings):
    settings = settings.model_copy(update={"enable_conversation_log": True})
    agent = build_session(settings, tmp_path)
    agent.context.conversation.add_message("user", "hello")
    assert (tmp_path / "logs" / "conversation.log").exists()

async def test_run_agent_single_shot(tmp_path, settings):
    settings = settings.model_copy(update={"interactive": False, "stream": False})
    provider = AsyncMock()
    provider.complete.return_value = Completion(text="<end_task>done</end_task>", model="m")

    with patch.object(display, "console"):
        status = await run_agent(settings, tmp_path, "Say done", provider=provider)

    assert status == 0
    provider.complete.assert_awaited_once()
    provider.aclose.assert_awaited_once()

# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def test_init_writes_config_once(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        first = runner.invoke(cli, ["run", "--init"])
        assert first.exit_code == 0
        assert "Created crkdrc.json" in first.output

        second = runner.invoke(cli, ["run", "--init"])
        assert second.exit_code == 0
        assert "already exists" in second.output

def test_missing_api_key_is_usage_error(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["run", "hello", "--no-interactive"])
    assert result.exit_code == 2
    assert "OPENROUTER_API_KEY" in result.output

def test_no_message_without_interactive_is_usage_error(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["run", "--no-interactive"])
    assert result.exit_code == 2
    assert "MESSAGE is required" in result.output

def test_invalid_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        with open("crkdrc.json", "w") as f:
            f.write("{broken")
        result = runner.invoke(cli, ["run", "hello"])
    assert result.exit_code == 1
    assert "not valid JSON" in result.output

def test_run_applies_cli_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path), patch(
        "crkd.run.run_agent", new=AsyncMock(return_value=0)
    ) as run_agent_mock:
        result = runner.invoke(cli, ["run", "fix it", "--no-interactive", "--timeout", "30"])

    assert result.exit_code == 0
    settings, _, message = run_agent_mock.await_args.args
    assert message == "fix it"
    assert settings.interactive is False
    assert settings.timeout == 30
    assert settings.open_router_api_key == "sk-test"
