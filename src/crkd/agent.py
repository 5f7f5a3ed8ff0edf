# agent.py
# The orchestration loop.
#
# The Agent owns control flow for one task: models are passive responders,
# actions are executed only through the dispatcher, and all state lives in
# the SessionContext.
#
# Control flow per round:
#   conversation -> model call (phase model, or escalated model in execute)
#   -> dispatcher -> results back into the conversation
#   -> end_task? done.  end_phase? re-prompt with the next phase.
#
# All terminal output is delegated to display.py.

import json
import logging

from crkd import display
from crkd.context import SessionContext
from crkd.dispatcher import ActionDispatcher
from crkd.models import (
    ActionBlueprint,
    ActionOutcome,
    ActionResult,
    Phase,
    PhaseTransition,
    TurnOptions,
    TurnResult,
)
from crkd.phases import PhaseController
from crkd.tags import TagBlock, extract_tags, find_action_blocks

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are crkd, an autonomous coding agent working inside a software project.

You act only through XML-style action tags embedded in your reply, for example:

<read_file>
  <path>src/app.py</path>
</read_file>

Rules:
- Every action must be a well-formed <tag>...</tag> pair. Never write an
  action name without its angle brackets.
- Prefer one action per reply. Results come back in the next message.
- Write complete file contents, never partial snippets.
- When the whole task is done, reply with <end_task>summary</end_task>.\
"""


# Child tags that name what an action worked on, first match wins.
_SUBJECT_PARAMS = ("path", "source_path", "url", "term", "action", "fromCommit", "baseBranch")


def _format_data(data) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    try:
        return json.dumps(data, indent=2, default=str)
    except (TypeError, ValueError):
        return str(data)


def _subject(blueprint: ActionBlueprint | None, inner: str, max_len: int = 80) -> str:
    """Short description of an action's target, e.g. the file path it wrote."""
    for name in _SUBJECT_PARAMS:
        values = extract_tags(inner, name)
        if values:
            return ", ".join(values)
    if blueprint is not None and any(p.from_body for p in blueprint.parameters) and "<" not in inner:
        body = " ".join(inner.split())
        return body if len(body) <= max_len else body[:max_len] + "..."
    return ""


def format_feedback(
    outcomes: list[ActionOutcome],
    dispatcher: ActionDispatcher,
    round_number: int,
    blocks: list[TagBlock] | None = None,
    note: str = "",
) -> str:
    """
    Render a round's results as the next user message.

    The round marker and the action subjects keep two rounds' feedback apart,
    so the conversation buffer never drops one as a duplicate. Failures always
    carry their message. Successful actions carry their full data only when
    the blueprint asks for post-processing.
    """
    blocks = blocks or []
    sections: list[str] = [f"[Round {round_number}]"]
    if note:
        sections.append(note)
    for outcome in outcomes:
        result = outcome.result
        blueprint = dispatcher.blueprint(outcome.tag)
        label = outcome.tag or "action"
        if blueprint is not None and outcome.index < len(blocks):
            subject = _subject(blueprint, blocks[outcome.index].inner)
            if subject:
                label = f"{label} ({subject})"

        if not result.success:
            message = result.error.message if result.error else "Unknown error"
            sections.append(f"[Action Result] {label}: Failed - {message}")
            continue
        if blueprint is not None and blueprint.requires_post_processing:
            sections.append(f"[Action Result] {label}: Success\n{_format_data(result.data)}")
        else:
            sections.append(f"[Action Result] {label}: Success")
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class Agent:
    """
    Runs one task to completion against a model provider.

    Example:
        agent = Agent(context, provider, ActionDispatcher(BLUEPRINTS), controller)
        result = await agent.execute("Fix the failing test", TurnOptions(stream=False))
    """

    def __init__(
        self,
        context: SessionContext,
        provider,
        dispatcher: ActionDispatcher,
        phase_controller: PhaseController | None = None,
        instructions: str = "",
        max_rounds: int = 25,
    ) -> None:
        self.context = context
        self.provider = provider
        self.dispatcher = dispatcher
        self.phase_controller = phase_controller
        self.instructions = instructions
        self.max_rounds = max_rounds
        # Rounds across every turn of the session; numbers the feedback messages.
        self.rounds_total = 0

    # ------------------------------------------------------------------
    # Model selection
    # ------------------------------------------------------------------

    @property
    def phase(self) -> Phase:
        if self.phase_controller is None:
            return Phase.EXECUTE
        return self.phase_controller.manager.current_phase

    def current_model(self) -> str:
        """
        The phase's model, except in the execute phase with the auto scaler
        on, where the escalation policy decides.
        """
        settings = self.context.settings
        if settings.auto_scaler and self.phase == Phase.EXECUTE:
            return self.context.escalation.get_current_model()
        if self.phase_controller is None:
            return settings.execute_model
        return self.phase_controller.manager.active_model

    def system_prompt(self) -> str:
        if not self.instructions:
            return SYSTEM_PROMPT
        return f"{SYSTEM_PROMPT}\n\n## Project instructions\n{self.instructions}"

    # ------------------------------------------------------------------
    # One round
    # ------------------------------------------------------------------

    async def _complete(self, model: str, options: TurnOptions) -> str:
        conversation = self.context.conversation
        if options.stream:
            completion = await self.provider.complete(
                model,
                conversation.as_dicts(),
                stream=True,
                on_chunk=display.stream_chunk,
                cancel_token=self.context.cancel_token,
            )
            display.stream_end()
        else:
            completion = await self.provider.complete(
                model,
                conversation.as_dicts(),
                stream=False,
                cancel_token=self.context.cancel_token,
            )
            display.model_response(completion.text)
        logger.debug(
            "Round completion",
            extra={"model_id": completion.model, "usage": completion.usage.model_dump()},
        )
        return completion.text

    def _has_actions(self, response: str) -> bool:
        if any(self.dispatcher.blueprint(b.tag) for b in find_action_blocks(response)):
            return True
        # Bare or half-open action names still deserve a correction round.
        return any(tag in response for tag in self.dispatcher.tags)

    def _outcomes(self, response: str, result: ActionResult) -> list[ActionOutcome]:
        if isinstance(result.data, list) and result.data and all(
            isinstance(item, ActionOutcome) for item in result.data
        ):
            return result.data
        tags = [b.tag for b in find_action_blocks(response) if self.dispatcher.blueprint(b.tag)]
        return [ActionOutcome(tag=tags[0] if tags else "", index=0, result=result)]

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self, message: str, options: TurnOptions | None = None) -> TurnResult:
        """
        Run rounds until end_task succeeds, the model replies without any
        action, or max_rounds is reached.

        RequestCancelledError propagates. A cancelled round has appended no
        assistant output, so the same message can be submitted again.
        """
        options = options or TurnOptions()
        conversation = self.context.conversation
        display.prompt_received(message)

        if conversation.get_system_instructions() is None:
            conversation.set_system_instructions(self.system_prompt())

        prompt = message
        if self.phase_controller is not None:
            prompt = self.phase_controller.render_prompt(message)
        conversation.add_message("user", prompt)

        outcomes: list[ActionOutcome] = []
        response = ""
        model = self.current_model()

        for round_number in range(1, self.max_rounds + 1):
            self.rounds_total += 1
            conversation.cleanup_context(self.context.settings.max_context_tokens)
            model = self.current_model()
            display.calling_model(model, self.phase.value, round_number)

            response = await self._complete(model, options)
            if not response:
                logger.info("Empty response from %s", model)
                display.no_actions()
                return TurnResult(response="", outcomes=outcomes, rounds=round_number, model=model)

            repeated = not conversation.add_message("assistant", response)
            if repeated:
                logger.info("Model repeated an earlier reply verbatim")

            if not self._has_actions(response):
                display.no_actions()
                return TurnResult(response=response, outcomes=outcomes, rounds=round_number, model=model)

            result = await self.dispatcher.execute_action(response, self.context)
            round_outcomes = self._outcomes(response, result)
            outcomes.extend(round_outcomes)

            if len(round_outcomes) == 1:
                display.action_result(round_outcomes[0].tag or "action", round_outcomes[0].result)
            else:
                display.action_round(round_outcomes)

            for outcome in round_outcomes:
                if outcome.tag == "end_task" and outcome.result.success:
                    display.final_result(str(outcome.result.data))
                    return TurnResult(
                        response=response,
                        outcomes=outcomes,
                        finished=True,
                        rounds=round_number,
                        model=model,
                    )

            transition = next(
                (
                    o.result.data
                    for o in round_outcomes
                    if o.result.success and isinstance(o.result.data, PhaseTransition)
                ),
                None,
            )
            if transition is not None and transition.regenerate:
                display.phase_changed(transition)
                conversation.add_message("user", transition.prompt)
                continue

            blocks = [b for b in find_action_blocks(response) if self.dispatcher.blueprint(b.tag)]
            feedback = format_feedback(
                round_outcomes,
                self.dispatcher,
                self.rounds_total,
                blocks=blocks,
                note="Your reply repeated an earlier one word for word." if repeated else "",
            )
            conversation.add_message("user", feedback)

        display.round_limit(self.max_rounds)
        return TurnResult(response=response, outcomes=outcomes, rounds=self.max_rounds, model=model)
