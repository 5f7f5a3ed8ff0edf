# config.py
# Settings for the crkd agent.
#
# Sources, lowest precedence first: field defaults, crkdrc.json in the
# working directory, then environment variables (a .env file is honoured via
# python-dotenv). crkdrc.json keys are camelCase; Python code uses snake_case.

import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from crkd.errors import ConfigError
from crkd.escalation import DEFAULT_MODEL_TIERS
from crkd.models import ModelTier

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "crkdrc.json"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# Environment variable -> settings field. Values are parsed as JSON when
# possible so numbers and booleans keep their type.
ENV_OVERRIDES = {
    "OPENROUTER_API_KEY": "open_router_api_key",
    "CRKD_DISCOVERY_MODEL": "discovery_model",
    "CRKD_STRATEGY_MODEL": "strategy_model",
    "CRKD_EXECUTE_MODEL": "execute_model",
    "CRKD_AUTO_SCALER": "auto_scaler",
    "CRKD_STREAM": "stream",
    "CRKD_INTERACTIVE": "interactive",
    "CRKD_TIMEOUT": "timeout",
    "CRKD_MAX_CONTEXT_TOKENS": "max_context_tokens",
    "CRKD_DEBUG": "debug",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class GitDiffSettings(_CamelModel):
    exclude_lock_files: bool = True
    lock_files: list[str] = Field(
        default_factory=lambda: ["package-lock.json", "yarn.lock", "poetry.lock", "uv.lock"]
    )


class Settings(_CamelModel):
    """Validated runtime configuration."""

    provider: str = "open-router"
    open_router_api_key: str = ""
    app_url: str = "https://github.com/crkd/crkd"
    app_name: str = "crkd"

    discovery_model: str = "google/gemini-flash-1.5-8b"
    strategy_model: str = "qwen/qwq-32b-preview"
    execute_model: str = "anthropic/claude-3.5-sonnet:beta"

    auto_scaler: bool = False
    auto_scale_available_models: list[ModelTier] = Field(
        default_factory=lambda: list(DEFAULT_MODEL_TIERS), min_length=1
    )

    instructions: str = "Follow clean code principles"
    instructions_path: str = ""

    interactive: bool = True
    stream: bool = True
    debug: bool = False
    timeout: float = Field(default=0, ge=0, description="Interactive idle timeout in seconds.")
    max_context_tokens: int = Field(default=128_000, gt=0)
    max_rounds: int = Field(default=25, gt=0)
    command_timeout: float = Field(default=120, gt=0)

    enable_conversation_log: bool = False
    conversation_log_path: str = "logs/conversation.log"

    git_diff: GitDiffSettings = Field(default_factory=GitDiffSettings)

    def read_instructions(self, root: Path) -> str:
        """Instructions text, preferring instructions_path when set."""
        if not self.instructions_path:
            return self.instructions
        path = (root / self.instructions_path).resolve()
        if not path.is_file():
            raise ConfigError(f"Instructions path must be a file: {path}")
        return path.read_text(encoding="utf-8")


def _env_overrides() -> dict[str, object]:
    overrides: dict[str, object] = {}
    for env_name, field_name in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            overrides[field_name] = json.loads(raw)
        except json.JSONDecodeError:
            overrides[field_name] = raw
    return overrides


def load_settings(path: Path | None = None) -> Settings:
    """
    Build Settings from crkdrc.json plus environment overrides.

    A missing file is not an error; a malformed one is.
    Raises ConfigError on unreadable JSON or failed validation.
    """
    load_dotenv()
    path = path or Path(os.getenv("CRKD_CONFIG", CONFIG_FILENAME))

    raw: dict[str, object] = {}
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must contain a JSON object.")
    else:
        logger.debug("No config file at %s, using defaults", path)

    try:
        settings = Settings.model_validate(raw)
        overrides = _env_overrides()
        if overrides:
            settings = Settings.model_validate({**settings.model_dump(), **overrides})
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
    return settings


def create_default_config(path: Path | None = None) -> bool:
    """Write a default crkdrc.json. Returns False if one already exists."""
    path = path or Path(CONFIG_FILENAME)
    if path.exists():
        return False
    defaults = Settings().model_dump(by_alias=True)
    path.write_text(json.dumps(defaults, indent=4), encoding="utf-8")
    return True
