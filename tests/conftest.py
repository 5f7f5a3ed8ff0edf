from unittest.mock import AsyncMock, MagicMock

import pytest

from crkd.actions import BLUEPRINTS
from crkd.config import ENV_OVERRIDES, Settings
from crkd.context import SessionContext
from crkd.conversation import ConversationBuffer
from crkd.dispatcher import ActionDispatcher
from crkd.escalation import ModelEscalationPolicy
from crkd.phases import PhaseController, PhaseManager
from crkd.workspace import FileOperations, FileSearch, PathAdjuster


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in [*ENV_OVERRIDES, "CRKD_CONFIG"]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> Settings:
    return Settings(open_router_api_key="test-key")


@pytest.fixture
def context(tmp_path, settings) -> SessionContext:
    """Real filesystem collaborators on tmp_path; git, fetch and commands are mocks."""
    conversation = ConversationBuffer()
    controller = PhaseController(PhaseManager.from_settings(settings), conversation)
    return SessionContext(
        root=tmp_path.resolve(),
        settings=settings,
        conversation=conversation,
        escalation=ModelEscalationPolicy(),
        files=FileOperations(tmp_path),
        search=FileSearch(tmp_path),
        git=MagicMock(),
        fetcher=AsyncMock(),
        paths=PathAdjuster(tmp_path),
        commands=AsyncMock(),
        phase_controller=controller,
    )


@pytest.fixture
def dispatcher() -> ActionDispatcher:
    return ActionDispatcher(BLUEPRINTS)
