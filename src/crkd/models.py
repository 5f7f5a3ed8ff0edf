# models.py
# Data contracts for the crkd agent core.
# No business logic lives here: pure schema and validation.

from enum import Enum
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]
ParameterKind = Literal["str", "int", "float", "bool", "url"]


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """A single chronological entry in the conversation log."""

    role: Role
    content: str


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class ActionError(BaseModel):
    """Failure payload carried by an unsuccessful ActionResult."""

    kind: str = Field(..., description="Error class name, e.g. ValidationError.")
    message: str
    parameter: str | None = Field(default=None, description="Offending parameter, if any.")
    cause: str | None = Field(default=None, description="Class name of the wrapped exception.")


class ActionResult(BaseModel):
    """Exactly one of these is produced for every handler invocation."""

    success: bool
    data: Any = None
    error: ActionError | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        kind: str,
        message: str,
        parameter: str | None = None,
        cause: str | None = None,
        data: Any = None,
    ) -> "ActionResult":
        error = ActionError(kind=kind, message=message, parameter=parameter, cause=cause)
        return cls(success=False, data=data, error=error)


class ActionParameter(BaseModel):
    """Declared sub-field of an action, extracted from a child tag."""

    model_config = ConfigDict(frozen=True)

    name: str
    required: bool = True
    description: str = ""
    kind: ParameterKind = "str"
    multiple: bool = Field(default=False, description="Collect every <name> occurrence.")
    from_body: bool = Field(
        default=False,
        description="Fall back to the action's whole inner text when no <name> child exists.",
    )
    validator: Callable[[Any], bool] | None = None


class ActionBlueprint(BaseModel):
    """Static registration record for one action kind. Immutable."""

    model_config = ConfigDict(frozen=True)

    tag: str
    description: str
    usage: str = ""
    priority: int = Field(..., description="Lower runs first in sequential rounds.")
    can_run_in_parallel: bool = False
    requires_post_processing: bool = Field(
        default=False,
        description="Full result data is fed back to the model on the next round.",
    )
    best_effort: bool = Field(default=False, description="A failure does not stop the round.")
    parameters: tuple[ActionParameter, ...] = ()
    handler: Callable[..., Awaitable[ActionResult]]


class ActionInvocation(BaseModel):
    """An extracted (tag, raw inner content) pair plus its parsed parameters."""

    tag: str
    content: str
    index: int = Field(..., description="Position of the tag in the response, 0-based.")
    params: dict[str, Any] = Field(default_factory=dict)


class ActionOutcome(BaseModel):
    """Result of one invocation inside a multi-action round."""

    tag: str
    index: int
    result: ActionResult


# ---------------------------------------------------------------------------
# Model escalation
# ---------------------------------------------------------------------------


class ModelTier(BaseModel):
    """One entry of the ordered escalation table."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, protected_namespaces=())

    model_id: str = Field(..., alias="id")
    max_local_tries: int = Field(..., alias="maxWriteTries", ge=1)
    max_global_tries: int = Field(..., alias="maxGlobalTries", ge=1)
    description: str = ""


class EscalationEvent(BaseModel):
    """Emitted on every policy query or mutation."""

    model_config = ConfigDict(protected_namespaces=())

    target: str | None
    count: int
    tier_index: int
    tier_max_tries: int
    global_tries: int
    model_id: str
    changed: bool = False


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    DISCOVERY = "discovery"
    STRATEGY = "strategy"
    EXECUTE = "execute"


class PromptArgs(BaseModel):
    message: str
    environment_details: str = ""
    project_info: str = ""


class PhaseConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Phase
    model: str
    generate_prompt: Callable[[PromptArgs], str]


class PhaseTransition(BaseModel):
    """Signals the caller to re-issue a model call with a new prompt and model."""

    regenerate: bool
    prompt: str
    selected_model: str
    phase: Phase


# ---------------------------------------------------------------------------
# Provider / turns
# ---------------------------------------------------------------------------


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float | None = None


class Completion(BaseModel):
    """Text returned by the model provider with its usage metadata."""

    text: str
    model: str
    usage: Usage = Field(default_factory=Usage)


class TurnOptions(BaseModel):
    timeout: float = Field(default=0, ge=0, description="Idle seconds before the loop gives up; 0 disables.")
    stream: bool = True


class TurnResult(BaseModel):
    """What one Agent.execute call produced."""

    response: str
    outcomes: list[ActionOutcome] = Field(default_factory=list)
    finished: bool = False
    rounds: int = 0
    model: str = ""


class SearchMatch(BaseModel):
    path: str
    line: int | None = None
    content: str = ""


class CommandOutput(BaseModel):
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
