# run.py
# Entry point. Config, logging and wiring only: no agent logic lives here.
#
# build_session() is the single place where collaborators are constructed
# and handed to each other. Nothing else in the package builds them.

import asyncio
import contextlib
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, Iterator

import rich_click as click
from rich.logging import RichHandler

from crkd import display
from crkd.actions import BLUEPRINTS
from crkd.agent import Agent
from crkd.config import Settings, create_default_config, load_settings
from crkd.context import SessionContext
from crkd.conversation import ConversationBuffer
from crkd.dispatcher import ActionDispatcher
from crkd.errors import ConfigError, CrkdError
from crkd.escalation import ModelEscalationPolicy
from crkd.models import TurnOptions
from crkd.phases import PhaseController, PhaseManager
from crkd.provider import OpenRouterProvider
from crkd.session import InteractiveSession
from crkd.workspace import (
    CommandRunner,
    FileOperations,
    FileSearch,
    GitService,
    PathAdjuster,
    UrlFetcher,
)

logger = logging.getLogger(__name__)

click.rich_click.USE_MARKDOWN = True


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=display.console, rich_tracebacks=True, show_path=debug)],
        force=True,
    )
    # Third-party request logs drown out the agent's own at DEBUG.
    for name in ("httpx", "httpcore", "openai", "git"):
        logging.getLogger(name).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def _project_info(root: Path) -> str:
    entries = sorted(p.name + ("/" if p.is_dir() else "") for p in root.iterdir() if not p.name.startswith("."))
    listing = "\n".join(f"- {name}" for name in entries[:50])
    return f"Project root: {root}\n\nTop-level entries:\n{listing}"


def build_session(settings: Settings, root: Path, provider=None) -> Agent:
    """
    Construct every collaborator for one agent run and wire them together.

    Pass a provider to replace the OpenRouter client, e.g. in tests.
    """
    root = root.resolve()
    log_path = root / settings.conversation_log_path if settings.enable_conversation_log else None
    conversation = ConversationBuffer(log_path=log_path)
    escalation = ModelEscalationPolicy(
        settings.auto_scale_available_models, listeners=[display.model_escalated]
    )
    controller = PhaseController(
        PhaseManager.from_settings(settings), conversation, project_info=_project_info(root)
    )
    context = SessionContext(
        root=root,
        settings=settings,
        conversation=conversation,
        escalation=escalation,
        files=FileOperations(root),
        search=FileSearch(root),
        git=GitService(root),
        fetcher=UrlFetcher(),
        paths=PathAdjuster(root),
        commands=CommandRunner(root, timeout=settings.command_timeout),
        phase_controller=controller,
    )
    provider = provider or OpenRouterProvider(
        api_key=settings.open_router_api_key,
        app_url=settings.app_url,
        app_name=settings.app_name,
    )
    return Agent(
        context,
        provider,
        ActionDispatcher(BLUEPRINTS),
        phase_controller=controller,
        instructions=settings.read_instructions(root),
        max_rounds=settings.max_rounds,
    )


# ---------------------------------------------------------------------------
# Terminal front-end
# ---------------------------------------------------------------------------


class TerminalFrontend:
    """
    stdin lines and Ctrl+C for the interactive session.

    Lines are read on a daemon thread so a timed-out read never keeps the
    process alive.
    """

    async def read_line(self) -> str | None:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def deliver(line: str | None) -> None:
            if not future.done():
                future.set_result(line)

        def worker() -> None:
            try:
                line = display.prompt_input()
            except (EOFError, KeyboardInterrupt):
                line = None
            # The loop may already be closed after a timeout; nobody is waiting then.
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(deliver, line)

        threading.Thread(target=worker, name="crkd-stdin", daemon=True).start()
        return await future

    @contextlib.contextmanager
    def interrupts(self, on_interrupt: Callable[[], None]) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, on_interrupt)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not supported here; Ctrl+C will abort")
            yield
            return
        try:
            yield
        finally:
            loop.remove_signal_handler(signal.SIGINT)


async def run_agent(settings: Settings, root: Path, message: str | None, provider=None) -> int:
    agent = build_session(settings, root, provider=provider)
    options = TurnOptions(timeout=settings.timeout, stream=settings.stream)
    display.banner(agent.current_model(), agent.phase.value, settings.interactive)
    try:
        if settings.interactive:
            frontend = TerminalFrontend()
            session = InteractiveSession(agent, options, frontend.read_line, initial_message=message)
            with frontend.interrupts(session.cancel):
                return await session.run()
        await agent.execute(message or "", options)
        return 0
    finally:
        await agent.context.aclose()
        await agent.provider.aclose()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="crkd", prog_name="crkd")
def cli() -> None:
    """crkd: an autonomous coding agent for your terminal."""


@cli.command("run")
@click.argument("message", required=False)
@click.option("--init", is_flag=True, help="Write a default `crkdrc.json` and exit.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file path. Defaults to `./crkdrc.json`.",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0),
    default=None,
    help="Interactive idle timeout in seconds, 0 disables.",
)
@click.option(
    "--interactive/--no-interactive",
    default=None,
    help="Keep reading follow-up messages after the first one.",
)
@click.option("--debug", is_flag=True, help="Verbose logging.")
def run_command(
    message: str | None,
    init: bool,
    config_path: Path | None,
    timeout: float | None,
    interactive: bool | None,
    debug: bool,
) -> None:
    """
    Run the agent on MESSAGE.

    In interactive mode, type `exit` or press Ctrl+D to quit and Ctrl+C to
    cancel the running request.
    """
    if init:
        path = config_path or Path("crkdrc.json")
        if create_default_config(path):
            click.echo(f"Created {path}")
        else:
            click.echo(f"{path} already exists, left unchanged")
        return

    try:
        settings = load_settings(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    updates: dict[str, object] = {}
    if timeout is not None:
        updates["timeout"] = timeout
    if interactive is not None:
        updates["interactive"] = interactive
    if debug:
        updates["debug"] = True
    settings = settings.model_copy(update=updates)

    configure_logging(settings.debug)

    if not settings.open_router_api_key:
        raise click.UsageError("OPENROUTER_API_KEY is not set. Add it to your environment or .env file.")
    if not message and not settings.interactive:
        raise click.UsageError("MESSAGE is required with --no-interactive.")

    status = asyncio.run(run_agent(settings, Path.cwd(), message))
    sys.exit(status)


def main() -> None:
    try:
        cli()
    except CrkdError as exc:
        display.error(str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
