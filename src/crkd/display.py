# display.py
# All terminal output for the crkd agent.
#
# This module owns presentation entirely. agent.py, session.py and run.py
# never format strings for the terminal: they call named functions here.
#
# Colour language:
#   cyan    - session and routing events
#   blue    - model calls and streamed responses
#   magenta - phase changes and model escalation
#   green   - success
#   yellow  - cancellation and timeouts
#   red     - failures

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from crkd.models import ActionOutcome, ActionResult, EscalationEvent, PhaseTransition

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ")
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _summary(result: ActionResult) -> str:
    if result.success:
        data = result.data if isinstance(result.data, str) else str(result.data or "")
        return _mono(data, 80) or "ok"
    return _mono(result.error.message if result.error else "failed", 80)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def banner(model: str, phase: str, interactive: bool) -> None:
    mode = "interactive" if interactive else "single run"
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]crkd[/bold cyan]\n"
            "[dim]Autonomous coding agent[/dim]\n\n"
            f"[dim]Model :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Phase :[/dim] [white]{phase}[/white]\n"
            f"[dim]Mode  :[/dim] [white]{mode}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_input() -> str:
    """Blocking line read. Runs in a worker thread."""
    return console.input("[bold cyan]crkd ›[/bold cyan] ")


def prompt_received(message: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(message)}[/white]",
            title=_label("USER", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def cancelled() -> None:
    console.print()
    console.print(
        _label("CANCELLED", "yellow"),
        "[yellow] Request cancelled. Restarting with the same message…[/yellow]",
    )


def timed_out(seconds: float) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold yellow]No input for {seconds:g}s.[/bold yellow]\n[dim]Session ended.[/dim]",
            title=_label("TIMEOUT", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


def goodbye() -> None:
    console.print()
    console.print("[dim]Goodbye.[/dim]")


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


def calling_model(model: str, phase: str, round_number: int) -> None:
    console.print()
    console.print(
        _label("MODEL", "blue"),
        f"[blue] → {escape(model)}[/blue] [dim](phase {phase}, round {round_number})[/dim]",
    )


def stream_chunk(text: str) -> None:
    console.print(text, end="", markup=False, highlight=False, soft_wrap=True)


def stream_end() -> None:
    console.print()


def model_response(text: str) -> None:
    console.print(
        Panel(
            Text(text),
            title=_label("ASSISTANT", "blue"),
            border_style="blue",
            padding=(0, 2),
        )
    )


def phase_changed(transition: PhaseTransition) -> None:
    console.print()
    console.print(
        Rule(
            f"[magenta]PHASE → {transition.phase.value.upper()}[/magenta] "
            f"[dim]{escape(transition.selected_model)}[/dim]",
            style="magenta",
        )
    )


def model_escalated(event: EscalationEvent) -> None:
    """Escalation listener. Quiet unless the resolved model actually changed."""
    if not event.changed:
        return
    console.print(
        _label("ESCALATION", "magenta"),
        f"[magenta] tier {event.tier_index} → {escape(event.model_id)}[/magenta] "
        f"[dim](target={escape(str(event.target))}, tries={event.count}, global={event.global_tries})[/dim]",
    )


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def action_result(tag: str, result: ActionResult) -> None:
    mark = "[bold green]✓[/bold green]" if result.success else "[bold red]✗[/bold red]"
    console.print(f"  {mark} [bold white]<{tag}>[/bold white]  [dim]{escape(_summary(result))}[/dim]")


def action_round(outcomes: list[ActionOutcome]) -> None:
    table = Table(box=box.SIMPLE_HEAVY, border_style="dim", header_style="bold dim", padding=(0, 1))
    table.add_column("#", justify="center", width=4)
    table.add_column("Action", width=22)
    table.add_column("OK", justify="center", width=4)
    table.add_column("Result", style="dim white")

    for outcome in outcomes:
        ok = "[bold green]✓[/bold green]" if outcome.result.success else "[bold red]✗[/bold red]"
        table.add_row(str(outcome.index), outcome.tag, ok, escape(_summary(outcome.result)))
    console.print(table)


def no_actions() -> None:
    console.print("  [dim]No actions in response.[/dim]")


def round_limit(rounds: int) -> None:
    console.print()
    console.print(
        _label("HALT", "red"),
        f"[red] Stopped after {rounds} rounds without end_task.[/red]",
    )


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(message: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(message)}[/white]",
            title=_label("TASK COMPLETE", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def error(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("ERROR", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
