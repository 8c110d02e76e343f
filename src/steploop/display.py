# display.py
# All terminal output for the CLI.
#
# This module owns presentation entirely. The engine never formats strings
# for the terminal; the CLI hands these functions to a run as callbacks.
#
# Colour language:
#   cyan     requests and routing events
#   blue     model output and plans
#   yellow   warnings and step limits
#   green    success
#   red      failures and halts
#   magenta  ReAct internals (Thought / Action / Observation)

import json
import logging

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from steploop.models import AgentConfig, RunResult, StepRecord, TerminationReason

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


def configure_logging(level: str = "INFO") -> None:
    """Route the engine's loggers through rich."""
    logger = logging.getLogger("steploop")
    logger.handlers.clear()
    logger.addHandler(RichHandler(console=console, show_path=False, rich_tracebacks=True, markup=False))
    logger.setLevel(level.upper())
    logger.propagate = False


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def banner(config: AgentConfig, tools: list[str]) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]steploop[/bold cyan]\n"
            "[dim]ReAct agent runner — type a task, or 'exit' to quit[/dim]\n\n"
            f"[dim]Agent   :[/dim] [white]{escape(config.name)}[/white] ({config.variant.value})\n"
            f"[dim]Model   :[/dim] [white]{escape(config.model)}[/white] via {config.dialect.value}\n"
            f"[dim]Tools   :[/dim] [white]{escape(', '.join(tools) or '(none)')}[/white]\n"
            f"[dim]Steps   :[/dim] [white]{config.max_steps}[/white]"
            + (f"  [dim]plan every[/dim] [white]{config.planning_interval}[/white]" if config.planning_interval else ""),
            border_style="cyan",
            padding=(1, 4),
        )
    )


def read_task() -> str:
    console.print()
    return console.input("[bold cyan]task ›[/bold cyan] ")


def prompt_received(task: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW TASK[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(task)}[/white]",
            title=_label("TASK", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Step loop
# ---------------------------------------------------------------------------


def chunk(step_index: int, text: str) -> None:
    console.print(text, end="", style="blue", markup=False, highlight=False)


def plan(text: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(text)}[/white]",
            title=_label("PLAN", "blue"),
            border_style="blue",
            padding=(0, 2),
        )
    )


def step_record(record: StepRecord, show_thought: bool = True) -> None:
    if record.plan:
        plan(record.plan)

    console.print()
    console.print(
        f"[bold cyan]  STEP {record.index}[/bold cyan]  [dim]{record.timing.duration:.2f}s[/dim]"
    )
    if record.thought and show_thought:
        console.print(f"  [magenta]Thought[/magenta]  [dim white]{escape(_mono(record.thought, 200))}[/dim white]")
    if record.action is not None:
        console.print(
            f"  [magenta]Action[/magenta]   [bold white]{escape(record.action.tool)}[/bold white]"
            f"  [dim]{escape(_mono(json.dumps(record.action.arguments), 160))}[/dim]"
        )
    if record.observation is not None:
        color = "red" if record.observation.is_error else "white"
        console.print(
            f"  [magenta]Observe[/magenta]  [dim]{record.observation.kind.value}[/dim] "
            f"[{color}]{escape(_mono(record.observation.content, 140))}[/{color}]"
        )
    if record.warning:
        console.print(f"  [yellow]⚠ {escape(record.warning)}[/yellow]")


def run_summary(result: RunResult) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Step", justify="center", width=6)
    table.add_column("Tool", width=18)
    table.add_column("Kind", width=18)
    table.add_column("Observation", style="dim white")

    for record in result.steps:
        if record.action is None:
            table.add_row(str(record.index), "—", "final answer", _mono(record.final_answer or "", 60))
            continue
        observation = record.observation
        table.add_row(
            str(record.index),
            escape(record.action.tool),
            observation.kind.value if observation else "",
            escape(_mono(observation.content if observation else "", 60)),
        )

    console.print(
        Panel(
            table,
            title=f"[dim]RUN SUMMARY — {result.reason.value}[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(result)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def step_limit(max_steps: int, answer: str | None) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold yellow]Step limit of {max_steps} reached before the task was finished.[/bold yellow]"
            + (f"\n\n[white]Best answer so far:\n{escape(answer)}[/white]" if answer else ""),
            title=_label("STEP LIMIT", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


def outcome(result: RunResult) -> None:
    """Print how a run ended."""
    if result.reason is TerminationReason.SUCCESS:
        final_result(result.final_answer or "")
    elif result.reason is TerminationReason.STEP_LIMIT_EXCEEDED:
        step_limit(len(result.steps), result.final_answer)
    elif result.reason is TerminationReason.CANCELLED:
        halt("Run cancelled.")
    else:
        halt(f"Run failed: {result.error_kind}: {result.error}")
