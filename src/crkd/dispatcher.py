# dispatcher.py
# Turns one model response into ActionResults.
#
# Control flow for execute_action():
#   structural validation -> registered top-level tags -> parameter parsing
#   -> handler(s) -> single result, or a merged result for multi-action rounds
#
# The dispatcher never raises across its public boundary and performs no I/O
# of its own. It owns nothing but the immutable tag -> blueprint table.

import asyncio
import logging
from typing import Any, Mapping
from urllib.parse import urlparse

from crkd.context import SessionContext
from crkd.errors import (
    CrkdError,
    HandlerError,
    MalformedTagError,
    UnknownActionError,
    ValidationError,
)
from crkd.models import (
    ActionBlueprint,
    ActionInvocation,
    ActionOutcome,
    ActionParameter,
    ActionResult,
)
from crkd.tags import extract_tag, extract_tags, find_action_blocks, validate_structure

logger = logging.getLogger(__name__)

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


# ---------------------------------------------------------------------------
# Parameter parsing
# ---------------------------------------------------------------------------


def _invalid(param: ActionParameter) -> ValidationError:
    return ValidationError(
        param.name, f"Invalid value for parameter: {param.name} (expected {param.kind})"
    )


def coerce(param: ActionParameter, raw: str) -> Any:
    """
    Convert one raw tag value to the parameter's declared kind.
    Raises ValidationError when the text does not parse.
    """
    if param.kind == "str":
        return raw
    if param.kind == "int":
        try:
            return int(raw)
        except ValueError:
            raise _invalid(param) from None
    if param.kind == "float":
        try:
            return float(raw)
        except ValueError:
            raise _invalid(param) from None
    if param.kind == "bool":
        lowered = raw.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise _invalid(param)
    if param.kind == "url":
        parsed = urlparse(raw)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise _invalid(param)
        return raw
    raise _invalid(param)


def _raw_values(param: ActionParameter, content: str) -> list[str]:
    if param.multiple:
        values = [v for v in extract_tags(content, param.name) if v]
    else:
        value = extract_tag(content, param.name)
        values = [value] if value else []
    if not values and param.from_body and f"<{param.name}>" not in content:
        body = content.strip()
        values = [body] if body else []
    return values


def parse_params(blueprint: ActionBlueprint, content: str) -> dict[str, Any]:
    """
    Extract, coerce and validate every declared parameter.

    Fails on the first bad parameter, in declaration order, distinguishing
    "No <name> provided" from "Invalid value for parameter: <name>".
    """
    params: dict[str, Any] = {}
    for param in blueprint.parameters:
        values = _raw_values(param, content)
        if not values:
            if param.required:
                raise ValidationError(param.name, f"No {param.name} provided")
            params[param.name] = [] if param.multiple else None
            continue

        coerced = [coerce(param, v) for v in values]
        if param.validator is not None and not all(param.validator(v) for v in coerced):
            raise ValidationError(param.name, f"Invalid value for parameter: {param.name}")
        params[param.name] = coerced if param.multiple else coerced[0]
    return params


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


def _failure(exc: CrkdError) -> ActionResult:
    cause = exc.__cause__
    return ActionResult.fail(
        type(exc).__name__,
        str(exc),
        parameter=getattr(exc, "parameter", None),
        cause=type(cause).__name__ if cause is not None else None,
    )


def _merge(outcomes: list[ActionOutcome], blueprints: Mapping[str, ActionBlueprint]) -> ActionResult:
    """Outcomes in invocation order; success unless a non-best-effort action failed."""
    outcomes = sorted(outcomes, key=lambda o: o.index)
    failures = [o for o in outcomes if not o.result.success]
    blocking = [o for o in failures if not blueprints[o.tag].best_effort]
    return ActionResult(
        success=not blocking,
        data=outcomes,
        error=failures[0].result.error if failures else None,
    )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class ActionDispatcher:
    """
    Validates and runs the actions embedded in a model response.

    Example:
        dispatcher = ActionDispatcher(BLUEPRINTS)
        result = await dispatcher.execute_action("<end_task>Done</end_task>", context)
        # -> ActionResult(success=True, data="Done")
    """

    def __init__(self, blueprints: Mapping[str, ActionBlueprint]) -> None:
        self._blueprints = dict(blueprints)

    @property
    def tags(self) -> tuple[str, ...]:
        return tuple(self._blueprints)

    def blueprint(self, tag: str) -> ActionBlueprint | None:
        return self._blueprints.get(tag)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(self, response_text: str) -> list[ActionInvocation]:
        """
        Registered top-level invocations in document order.

        Raises MalformedTagError when the structure is unusable and
        UnknownActionError when no top-level tag is registered.
        """
        diagnostic = validate_structure(response_text, self._blueprints)
        if diagnostic is not None:
            raise MalformedTagError(diagnostic)

        blocks = find_action_blocks(response_text)
        known = [b for b in blocks if b.tag in self._blueprints]
        if not known:
            raise UnknownActionError(blocks[0].tag)

        ignored = [b.tag for b in blocks if b.tag not in self._blueprints]
        if ignored:
            logger.debug("Ignoring unregistered tags: %s", ", ".join(ignored))

        return [ActionInvocation(tag=b.tag, content=b.inner, index=i) for i, b in enumerate(known)]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, invocation: ActionInvocation, context: SessionContext) -> ActionResult:
        blueprint = self._blueprints[invocation.tag]
        try:
            invocation.params = parse_params(blueprint, invocation.content)
        except ValidationError as exc:
            logger.info("Rejected <%s>: %s", invocation.tag, exc)
            return _failure(exc)

        logger.debug("Dispatching <%s>", invocation.tag, extra={"params": list(invocation.params)})
        try:
            return await blueprint.handler(invocation.params, context)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Handler for <%s> failed: %s", invocation.tag, exc, exc_info=True)
            wrapped = HandlerError(str(exc))
            wrapped.__cause__ = exc
            return _failure(wrapped)

    async def _run_parallel(
        self, invocations: list[ActionInvocation], context: SessionContext
    ) -> list[ActionOutcome]:
        results = await asyncio.gather(*(self._run(inv, context) for inv in invocations))
        return [
            ActionOutcome(tag=inv.tag, index=inv.index, result=result)
            for inv, result in zip(invocations, results)
        ]

    async def _run_sequential(
        self, invocations: list[ActionInvocation], context: SessionContext
    ) -> list[ActionOutcome]:
        outcomes: list[ActionOutcome] = []
        ordered = sorted(invocations, key=lambda inv: self._blueprints[inv.tag].priority)
        for invocation in ordered:
            result = await self._run(invocation, context)
            outcomes.append(ActionOutcome(tag=invocation.tag, index=invocation.index, result=result))
            if not result.success and not self._blueprints[invocation.tag].best_effort:
                logger.info("Stopping round after failed <%s>", invocation.tag)
                break
        return outcomes

    async def execute_action(self, response_text: str, context: SessionContext) -> ActionResult:
        """
        Run every registered action in the response.

        One invocation: its result is returned unchanged. Several: a merged
        result whose data is the list of ActionOutcome in invocation order.
        """
        try:
            invocations = self.parse(response_text)
        except CrkdError as exc:
            logger.info("Unusable response: %s", exc)
            return _failure(exc)

        if len(invocations) == 1:
            return await self._run(invocations[0], context)

        if all(self._blueprints[inv.tag].can_run_in_parallel for inv in invocations):
            outcomes = await self._run_parallel(invocations, context)
        else:
            outcomes = await self._run_sequential(invocations, context)
        return _merge(outcomes, self._blueprints)
