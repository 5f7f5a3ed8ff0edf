# phases.py
# Discovery -> strategy -> execute.
#
# Each phase has one model and one prompt template. Prompt text lives inside
# <phase_prompt> blocks so that the conversation buffer can strip it when the
# phase ends, keeping only what the model actually found or decided.
#
# Transitions are strictly forward. Calling transition_to_next_phase() in the
# execute phase is a no-op that reports the current state with
# regenerate=False; it never wraps back to discovery.

import logging

from crkd.conversation import ConversationBuffer
from crkd.models import Phase, PhaseConfig, PhaseTransition, PromptArgs

logger = logging.getLogger(__name__)

PHASE_ORDER: tuple[Phase, ...] = (Phase.DISCOVERY, Phase.STRATEGY, Phase.EXECUTE)
CONTINUATION_MESSAGE = "Continue with the next phase based on previous findings."


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

DISCOVERY_PROMPT = """\
{message}

<phase_prompt>
## Discovery Phase

Find and read the files needed to understand the task. Stay focused: read
the core file first, follow its imports, run the relevant tests if the task
is about failing tests, then move on.

- Say briefly what you are about to do before any action.
- Your first action must be <read_file>. Never end the phase in the same
  reply as your first read.
- When you have enough context, reply with <end_phase></end_phase>.

## Allowed Actions
<read_file><path>relative/path</path></read_file>
<search_string><directory>.</directory><term>text</term></search_string>
<search_file><directory>.</directory><term>file name pattern</term></search_file>
<list_directory_files><path>.</path><recursive>false</recursive></list_directory_files>
<relative_path_lookup><source_path>file/with/import.py</source_path><path>../broken/import</path></relative_path_lookup>
<fetch_url><url>https://example.com</url></fetch_url>
<execute_command>command to run</execute_command>
<end_phase></end_phase>

## Environment
{project_info}

{environment_details}
</phase_prompt>
"""

STRATEGY_PROMPT = """\
{message}

<phase_prompt>
## Strategy Phase

Plan one solution from the discovery findings. Do not explore again.

1. State the goal.
2. List dependencies and affected files.
3. Give numbered implementation steps.
4. Note edge cases and how to test them.

Write full code only, never elide lines. Code belongs inside <write_file>
tags, never in markdown fences. When the plan is complete, reply with
<end_phase></end_phase>.

## Allowed Actions
<write_file><path>relative/path</path><content>full file content</content></write_file>
<execute_command>command to run</execute_command>
<action_explainer><action>git_diff</action></action_explainer>
<end_phase></end_phase>

## Environment
{project_info}

{environment_details}
</phase_prompt>
"""

EXECUTE_PROMPT = """\
{message}

<phase_prompt>
## Execute Phase

Follow the strategy one step at a time, one action per reply.

- After each <write_file>, run the specific test for that change.
- If it fails, fix it. Increase <try> in the next <write_file> for the same
  file so a stronger model can take over.
- Run the whole test suite before <end_task>.
- Use relative_path_lookup when unsure about an import path.

## Allowed Actions
<write_file><path>relative/path</path><content>full file content</content><try>1</try></write_file>
<read_file><path>relative/path</path></read_file>
<delete_file><path>relative/path</path></delete_file>
<move_file><source_path>old/path</source_path><destination_path>new/path</destination_path></move_file>
<copy_file><source_path>old/path</source_path><destination_path>new/path</destination_path></copy_file>
<relative_path_lookup><source_path>file/with/import.py</source_path><path>../broken/import</path></relative_path_lookup>
<git_diff><fromCommit>HEAD~1</fromCommit><toCommit>HEAD</toCommit></git_diff>
<execute_command>command to run</execute_command>
<end_task>summary of what was done</end_task>

## Environment
{project_info}

{environment_details}
</phase_prompt>
"""


def _render(template: str, args: PromptArgs) -> str:
    return template.format(
        message=args.message,
        project_info=args.project_info,
        environment_details=args.environment_details,
    )


def discovery_prompt(args: PromptArgs) -> str:
    return _render(DISCOVERY_PROMPT, args)


def strategy_prompt(args: PromptArgs) -> str:
    return _render(STRATEGY_PROMPT, args)


def execute_prompt(args: PromptArgs) -> str:
    return _render(EXECUTE_PROMPT, args)


_TEMPLATES = {
    Phase.DISCOVERY: discovery_prompt,
    Phase.STRATEGY: strategy_prompt,
    Phase.EXECUTE: execute_prompt,
}


# ---------------------------------------------------------------------------
# Phase state
# ---------------------------------------------------------------------------


class PhaseManager:
    """Current phase, per-phase config and the model that is active right now."""

    def __init__(self, discovery_model: str, strategy_model: str, execute_model: str) -> None:
        models = {
            Phase.DISCOVERY: discovery_model,
            Phase.STRATEGY: strategy_model,
            Phase.EXECUTE: execute_model,
        }
        self._configs = {
            phase: PhaseConfig(phase=phase, model=models[phase], generate_prompt=_TEMPLATES[phase])
            for phase in PHASE_ORDER
        }
        self._current = PHASE_ORDER[0]
        self._active_model = self._configs[self._current].model

    @classmethod
    def from_settings(cls, settings) -> "PhaseManager":
        return cls(
            discovery_model=settings.discovery_model,
            strategy_model=settings.strategy_model,
            execute_model=settings.execute_model,
        )

    @property
    def current_phase(self) -> Phase:
        return self._current

    @property
    def active_model(self) -> str:
        return self._active_model

    def set_active_model(self, model: str) -> None:
        self._active_model = model

    def current_config(self) -> PhaseConfig:
        return self._configs[self._current]

    def config_for(self, phase: Phase) -> PhaseConfig:
        return self._configs[phase]

    def is_terminal(self) -> bool:
        return self._current == PHASE_ORDER[-1]

    def next_phase(self) -> Phase:
        """Advance one step. The terminal phase stays where it is."""
        if not self.is_terminal():
            self._current = PHASE_ORDER[PHASE_ORDER.index(self._current) + 1]
        return self._current

    def reset(self) -> None:
        self._current = PHASE_ORDER[0]
        self._active_model = self._configs[self._current].model


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


class PhaseController:
    """
    Moves the task to its next phase.

    Example:
        controller = PhaseController(PhaseManager.from_settings(settings), buffer)
        transition = controller.transition_to_next_phase()
        if transition.regenerate:
            ...  # call transition.selected_model with transition.prompt
    """

    def __init__(
        self,
        manager: PhaseManager,
        conversation: ConversationBuffer,
        project_info: str = "",
        environment_details: str = "",
    ) -> None:
        self.manager = manager
        self.conversation = conversation
        self.project_info = project_info
        self.environment_details = environment_details

    def render_prompt(self, message: str, phase: Phase | None = None) -> str:
        config = self.manager.config_for(phase or self.manager.current_phase)
        return config.generate_prompt(
            PromptArgs(
                message=message,
                project_info=self.project_info,
                environment_details=self.environment_details,
            )
        )

    def transition_to_next_phase(self) -> PhaseTransition:
        if self.manager.is_terminal():
            phase = self.manager.current_phase
            logger.info("Already in terminal phase %s, transition ignored", phase.value)
            return PhaseTransition(
                regenerate=False,
                prompt=self.render_prompt(CONTINUATION_MESSAGE),
                selected_model=self.manager.active_model,
                phase=phase,
            )

        previous = self.manager.current_phase
        dropped = self.conversation.cleanup_phase_content()
        phase = self.manager.next_phase()
        model = self.manager.current_config().model
        self.manager.set_active_model(model)

        logger.info(
            "Phase %s -> %s",
            previous.value,
            phase.value,
            extra={"model_id": model, "dropped_messages": dropped},
        )
        return PhaseTransition(
            regenerate=True,
            prompt=self.render_prompt(CONTINUATION_MESSAGE),
            selected_model=model,
            phase=phase,
        )
