# actions.py
# Action registry: blueprints and their handlers.
#
# The dispatcher imports BLUEPRINTS and never calls these functions directly.
# Every handler is `async (params, context) -> ActionResult`. Handlers raise
# on collaborator failure; the dispatcher turns the exception into a failed
# result with the original message intact.

import asyncio
import html
import logging
import os
from enum import IntEnum
from pathlib import Path

from crkd.context import SessionContext
from crkd.models import ActionBlueprint, ActionParameter, ActionResult

logger = logging.getLogger(__name__)

# Writes that would remove more than this share of an existing file are refused.
CONTENT_REMOVAL_THRESHOLD = 90.0


class ActionPriority(IntEnum):
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4
    LOWEST = 5


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def removal_percentage(existing: str, new: str) -> float:
    """Share of the existing (trimmed) content a write would remove, 0-100."""
    existing_length = len(existing.strip())
    if existing_length == 0:
        return 0.0
    removed = max(0, existing_length - len(new.strip()))
    return removed / existing_length * 100


def _valid_threshold(value: float) -> bool:
    return 0 < value <= 1


def _format_matches(matches) -> str:
    if not matches:
        return "No matches found."
    return "\n".join(f"{m.path}:{m.line}: {m.content}" for m in matches)


# ---------------------------------------------------------------------------
# File actions
# ---------------------------------------------------------------------------


async def _action_read_file(params: dict, ctx: SessionContext) -> ActionResult:
    resolved: list[str] = []
    for path in params["path"]:
        if ctx.files.exists(path):
            resolved.append(path)
            continue
        alternatives = ctx.search.find_by_name(Path(path).name, str(ctx.root))
        if not alternatives:
            raise FileNotFoundError(
                f"Failed to read files: {path}. Try using search_file action to find the proper path."
            )
        logger.info("File not found at %s, reading %s instead", path, alternatives[0])
        resolved.append(alternatives[0])

    if len(resolved) == 1:
        return ActionResult.ok(ctx.files.read(resolved[0]))

    sections = [f"[File: {path}]\n{ctx.files.read(path)}" for path in resolved]
    return ActionResult.ok("\n\n".join(sections))


async def _action_write_file(params: dict, ctx: SessionContext) -> ActionResult:
    path = params["path"]
    content = html.unescape(params["content"])

    if params.get("try") is not None:
        ctx.escalation.set_try_count(path, params["try"])

    if ctx.files.exists(path):
        removed = removal_percentage(ctx.files.read(path), content)
        if removed > CONTENT_REMOVAL_THRESHOLD:
            return ActionResult.fail(
                "ValidationError",
                f"Prevented removal of {removed:.1f}% of file content. This appears to be a "
                "potential error. Please review the changes and ensure only necessary "
                "modifications are made.",
                parameter="content",
            )

    target = ctx.files.write(path, content)
    return ActionResult.ok({"path": str(target), "selected_model": ctx.escalation.get_current_model()})


async def _action_delete_file(params: dict, ctx: SessionContext) -> ActionResult:
    target = ctx.files.delete(params["path"])
    return ActionResult.ok(f"Deleted {target}")


async def _action_move_file(params: dict, ctx: SessionContext) -> ActionResult:
    target = ctx.files.move(params["source_path"], params["destination_path"])
    return ActionResult.ok(f"Moved {params['source_path']} to {target}")


async def _action_copy_file(params: dict, ctx: SessionContext) -> ActionResult:
    target = ctx.files.copy(params["source_path"], params["destination_path"])
    return ActionResult.ok(f"Copied {params['source_path']} to {target}")


async def _action_list_directory_files(params: dict, ctx: SessionContext) -> ActionResult:
    files = ctx.files.list_files(params["path"], recursive=bool(params.get("recursive")))
    return ActionResult.ok("\n".join(files) if files else "Directory is empty.")


# ---------------------------------------------------------------------------
# Search actions
# ---------------------------------------------------------------------------


async def _action_search_string(params: dict, ctx: SessionContext) -> ActionResult:
    matches = ctx.search.find_by_content(params["term"], params["directory"])
    return ActionResult.ok(_format_matches(matches))


async def _action_search_file(params: dict, ctx: SessionContext) -> ActionResult:
    paths = ctx.search.find_by_name(params["term"], params["directory"])
    return ActionResult.ok("\n".join(paths) if paths else "No matches found.")


async def _action_relative_path_lookup(params: dict, ctx: SessionContext) -> ActionResult:
    source = ctx.files.resolve(params["source_path"])
    threshold = params.get("threshold")
    if threshold is None:
        threshold = 0.6
    candidate = (source.parent / params["path"]).resolve()

    adjusted = ctx.paths.adjust_path(str(candidate), threshold)
    if adjusted is None:
        raise FileNotFoundError(f"No similar file found for {params['path']} (threshold {threshold})")

    relative = Path(os.path.relpath(adjusted, source.parent)).as_posix()
    if not relative.startswith("."):
        relative = f"./{relative}"
    return ActionResult.ok(
        {"original_path": params["path"], "new_path": relative, "absolute_path": adjusted}
    )


# ---------------------------------------------------------------------------
# Git actions
# ---------------------------------------------------------------------------


def _lock_file_excludes(ctx: SessionContext) -> list[str]:
    settings = ctx.settings.git_diff
    return list(settings.lock_files) if settings.exclude_lock_files else []


async def _action_git_diff(params: dict, ctx: SessionContext) -> ActionResult:
    diff = await asyncio.to_thread(
        ctx.git.diff, params["fromCommit"], params["toCommit"], _lock_file_excludes(ctx)
    )
    return ActionResult.ok(diff or "No changes found.")


async def _action_git_pr_diff(params: dict, ctx: SessionContext) -> ActionResult:
    revision = f"{params['baseBranch']}...{params['compareBranch']}"
    diff = await asyncio.to_thread(ctx.git.diff, revision, None, _lock_file_excludes(ctx))
    return ActionResult.ok(diff or "No changes found.")


# ---------------------------------------------------------------------------
# Network and commands
# ---------------------------------------------------------------------------


async def _action_fetch_url(params: dict, ctx: SessionContext) -> ActionResult:
    return ActionResult.ok(await ctx.fetcher.fetch(params["url"]))


async def _action_execute_command(params: dict, ctx: SessionContext) -> ActionResult:
    output = await ctx.commands.run(params["command"])
    data = output.model_dump()
    if output.exit_code != 0:
        message = output.stderr.strip() or f"Command exited with status {output.exit_code}"
        return ActionResult.fail("CommandError", message, data=data)
    return ActionResult.ok(data)


# ---------------------------------------------------------------------------
# Control actions
# ---------------------------------------------------------------------------


async def _action_action_explainer(params: dict, ctx: SessionContext) -> ActionResult:
    return ActionResult.ok(explain_action(params["action"]))


async def _action_end_phase(params: dict, ctx: SessionContext) -> ActionResult:
    if ctx.phase_controller is None:
        return ActionResult.fail("HandlerError", "Phases are not enabled for this session")
    return ActionResult.ok(ctx.phase_controller.transition_to_next_phase())


async def _action_end_task(params: dict, ctx: SessionContext) -> ActionResult:
    return ActionResult.ok(params["message"])


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_PATH = ActionParameter(name="path", description="Path relative to the project root")
_SOURCE = ActionParameter(name="source_path", description="Existing file")
_DESTINATION = ActionParameter(name="destination_path", description="Where the file should end up")
_DIRECTORY = ActionParameter(name="directory", description="Directory to search")

_BLUEPRINT_LIST = [
    ActionBlueprint(
        tag="read_file",
        description="Reads one or more files",
        usage="<read_file>\n  <path>src/app.py</path>\n  <path>src/utils.py</path>\n</read_file>",
        priority=ActionPriority.CRITICAL,
        can_run_in_parallel=True,
        requires_post_processing=True,
        parameters=(
            ActionParameter(name="path", multiple=True, description="File to read, repeatable"),
        ),
        handler=_action_read_file,
    ),
    ActionBlueprint(
        tag="write_file",
        description="Creates or overwrites a file with the full new content",
        usage=(
            "<write_file>\n  <path>src/app.py</path>\n  <content>full file content</content>\n"
            "  <try>1</try>\n</write_file>"
        ),
        priority=ActionPriority.MEDIUM,
        parameters=(
            _PATH,
            ActionParameter(name="content", description="Complete file content"),
            ActionParameter(
                name="try",
                required=False,
                kind="int",
                description="How many times this file has been attempted",
                validator=lambda count: count >= 0,
            ),
        ),
        handler=_action_write_file,
    ),
    ActionBlueprint(
        tag="delete_file",
        description="Deletes a file",
        usage="<delete_file>\n  <path>src/obsolete.py</path>\n</delete_file>",
        priority=ActionPriority.MEDIUM,
        parameters=(_PATH,),
        handler=_action_delete_file,
    ),
    ActionBlueprint(
        tag="move_file",
        description="Moves or renames a file",
        usage=(
            "<move_file>\n  <source_path>src/old.py</source_path>\n"
            "  <destination_path>src/new.py</destination_path>\n</move_file>"
        ),
        priority=ActionPriority.MEDIUM,
        parameters=(_SOURCE, _DESTINATION),
        handler=_action_move_file,
    ),
    ActionBlueprint(
        tag="copy_file",
        description="Copies a file",
        usage=(
            "<copy_file>\n  <source_path>src/a.py</source_path>\n"
            "  <destination_path>src/b.py</destination_path>\n</copy_file>"
        ),
        priority=ActionPriority.CRITICAL,
        can_run_in_parallel=True,
        parameters=(_SOURCE, _DESTINATION),
        handler=_action_copy_file,
    ),
    ActionBlueprint(
        tag="list_directory_files",
        description="Lists the files of a directory",
        usage="<list_directory_files>\n  <path>src</path>\n  <recursive>true</recursive>\n</list_directory_files>",
        priority=ActionPriority.HIGH,
        can_run_in_parallel=True,
        requires_post_processing=True,
        parameters=(
            ActionParameter(name="path", description="Directory to list"),
            ActionParameter(name="recursive", required=False, kind="bool", description="Include subdirectories"),
        ),
        handler=_action_list_directory_files,
    ),
    ActionBlueprint(
        tag="search_string",
        description="Searches file contents for a string",
        usage="<search_string>\n  <directory>src</directory>\n  <term>def main</term>\n</search_string>",
        priority=ActionPriority.HIGH,
        can_run_in_parallel=True,
        requires_post_processing=True,
        parameters=(_DIRECTORY, ActionParameter(name="term", description="Text to look for")),
        handler=_action_search_string,
    ),
    ActionBlueprint(
        tag="search_file",
        description="Searches for files by name",
        usage="<search_file>\n  <directory>src</directory>\n  <term>*.py</term>\n</search_file>",
        priority=ActionPriority.HIGH,
        can_run_in_parallel=True,
        requires_post_processing=True,
        parameters=(_DIRECTORY, ActionParameter(name="term", description="File name or glob pattern")),
        handler=_action_search_file,
    ),
    ActionBlueprint(
        tag="git_diff",
        description="Shows the diff between two commits, lock files excluded",
        usage="<git_diff>\n  <fromCommit>HEAD~1</fromCommit>\n  <toCommit>HEAD</toCommit>\n</git_diff>",
        priority=ActionPriority.HIGH,
        can_run_in_parallel=True,
        requires_post_processing=True,
        parameters=(
            ActionParameter(name="fromCommit", description="Older commit or ref"),
            ActionParameter(name="toCommit", description="Newer commit or ref"),
        ),
        handler=_action_git_diff,
    ),
    ActionBlueprint(
        tag="git_pr_diff",
        description="Shows what a branch changes relative to a base branch",
        usage=(
            "<git_pr_diff>\n  <baseBranch>main</baseBranch>\n"
            "  <compareBranch>feature</compareBranch>\n</git_pr_diff>"
        ),
        priority=ActionPriority.HIGH,
        can_run_in_parallel=True,
        requires_post_processing=True,
        parameters=(
            ActionParameter(name="baseBranch", description="Branch the PR targets"),
            ActionParameter(name="compareBranch", description="Branch with the changes"),
        ),
        handler=_action_git_pr_diff,
    ),
    ActionBlueprint(
        tag="relative_path_lookup",
        description="Finds the closest existing file for a broken relative import path",
        usage=(
            "<relative_path_lookup>\n  <source_path>src/app.py</source_path>\n"
            "  <path>../utils/helper</path>\n  <threshold>0.6</threshold>\n</relative_path_lookup>"
        ),
        priority=ActionPriority.CRITICAL,
        can_run_in_parallel=True,
        requires_post_processing=True,
        parameters=(
            ActionParameter(name="source_path", description="File containing the broken import"),
            ActionParameter(name="path", description="The relative path that does not resolve"),
            ActionParameter(
                name="threshold",
                required=False,
                kind="float",
                description="Minimum similarity, 0 < t <= 1, default 0.6",
                validator=_valid_threshold,
            ),
        ),
        handler=_action_relative_path_lookup,
    ),
    ActionBlueprint(
        tag="fetch_url",
        description="Fetches the content of an http or https URL",
        usage="<fetch_url>\n  <url>https://example.com/docs</url>\n</fetch_url>",
        priority=ActionPriority.CRITICAL,
        can_run_in_parallel=True,
        requires_post_processing=True,
        parameters=(ActionParameter(name="url", kind="url", description="http or https URL"),),
        handler=_action_fetch_url,
    ),
    ActionBlueprint(
        tag="execute_command",
        description="Runs a shell command in the project root",
        usage="<execute_command>\n  pytest tests/test_app.py\n</execute_command>",
        priority=ActionPriority.LOW,
        requires_post_processing=True,
        parameters=(ActionParameter(name="command", from_body=True, description="Command line"),),
        handler=_action_execute_command,
    ),
    ActionBlueprint(
        tag="action_explainer",
        description="Explains how to use an action",
        usage="<action_explainer>\n  <action>git_diff</action>\n</action_explainer>",
        priority=ActionPriority.HIGH,
        can_run_in_parallel=True,
        requires_post_processing=True,
        best_effort=True,
        parameters=(ActionParameter(name="action", description="Action tag to explain"),),
        handler=_action_action_explainer,
    ),
    ActionBlueprint(
        tag="end_phase",
        description="Ends the current phase and moves to the next one",
        usage="<end_phase></end_phase>",
        priority=ActionPriority.CRITICAL,
        requires_post_processing=True,
        handler=_action_end_phase,
    ),
    ActionBlueprint(
        tag="end_task",
        description="Ends the task with a summary message",
        usage="<end_task>\n  All tests pass, the bug is fixed.\n</end_task>",
        priority=ActionPriority.LOWEST,
        parameters=(
            ActionParameter(name="message", from_body=True, description="Summary of the work done"),
        ),
        handler=_action_end_task,
    ),
]

BLUEPRINTS: dict[str, ActionBlueprint] = {bp.tag: bp for bp in _BLUEPRINT_LIST}
ACTION_TAGS: tuple[str, ...] = tuple(BLUEPRINTS)


# ---------------------------------------------------------------------------
# Documentation
# ---------------------------------------------------------------------------


def _format_blueprint(blueprint: ActionBlueprint) -> str:
    lines = [f"<{blueprint.tag}> {blueprint.description}"]
    if blueprint.parameters:
        lines.append("")
        lines.append("Parameters:")
        for param in blueprint.parameters:
            flag = "required" if param.required else "optional"
            lines.append(f"- {param.name} ({flag}): {param.description}")
    lines.append("")
    lines.append("Usage:")
    lines.append(blueprint.usage)
    return "\n".join(lines)


def explain_action(tag: str, blueprints: dict[str, ActionBlueprint] | None = None) -> str:
    blueprint = (blueprints or BLUEPRINTS).get(tag)
    if blueprint is None:
        return f"Action {tag} not found."
    return _format_blueprint(blueprint)


def explain_all_actions(blueprints: dict[str, ActionBlueprint] | None = None) -> str:
    return "\n\n".join(_format_blueprint(bp) for bp in (blueprints or BLUEPRINTS).values())
