"""Console rendering of task events."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

from .base import TaskEvent, TaskStatus

_STYLES = {
    TaskStatus.RUNNING: ("cyan", "…"),
    TaskStatus.SUCCEEDED: ("green", "✓"),
    TaskStatus.FAILED: ("red", "✗"),
    TaskStatus.NOT_STARTED: ("dim", "·"),
}


class ConsoleProgress:
    """Session listener that prints one line per task transition.

    Usage::

        session.subscribe(ConsoleProgress())
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self.events: list[TaskEvent] = []

    def __call__(self, event: TaskEvent) -> None:
        self.events.append(event)
        colour, mark = _STYLES[event.status]
        line = f"  [{colour}]{mark} {event.task.value}[/{colour}] {event.status.value}"
        if event.status is TaskStatus.SUCCEEDED:
            line += f" [dim]({event.duration_ms:.0f} ms)[/dim]"
        elif event.status is TaskStatus.FAILED and event.error:
            line += f" [dim]{escape(event.error)}[/dim]"
        self.console.print(line, highlight=False)
