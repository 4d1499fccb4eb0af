"""TUI dashboard for a dgrep dispatch round."""

from __future__ import annotations

import time

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker

from dgrep.executor import Dispatcher
from dgrep.models import NodeResult, NodeStatus, Target, summarize
from dgrep.protocol import ExecutionRequest

STATUS_ICONS = {
    NodeStatus.PENDING: ("·", "dim"),
    NodeStatus.CONNECTING: ("…", "yellow"),
    NodeStatus.RUNNING: ("⟳", "yellow"),
    NodeStatus.SUCCESS: ("✓", "green"),
    NodeStatus.FAILED: ("✗", "red"),
}


class TargetPanel(Static):
    """A panel displaying the outcome for a single target."""

    status: reactive[NodeStatus] = reactive(NodeStatus.PENDING)

    def __init__(self, index: int, target: Target, **kwargs) -> None:
        super().__init__(**kwargs)
        self.index = index
        self.endpoint = target
        self.hostname = ""

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self.index}")
        yield RichLog(
            id=f"log-{self.index}",
            highlight=False,
            markup=True,
            wrap=True,
            auto_scroll=True,
        )

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        name = escape(self.hostname) if self.hostname else "…"
        return f"[{color}]{icon}[/] [{color}][bold]{name}[/bold][/] [{color}]{self.endpoint}[/]"

    def watch_status(self, status: NodeStatus) -> None:
        """Update header when status changes."""
        if not self.is_mounted:
            return
        self.query_one(f"#header-{self.index}", Label).update(self._get_header())

    def show_result(self, result: NodeResult) -> None:
        self.hostname = result.hostname
        self.query_one(f"#header-{self.index}", Label).update(self._get_header())

        log = self.query_one(f"#log-{self.index}", RichLog)
        if result.error is not None:
            log.write(f"[bold red]{escape(str(result.error))}[/bold red]")
        elif not result.lines:
            log.write("[green]No matches found[/green]")
        else:
            log.write(f"[green]Found {len(result.lines)} matches:[/green]")
        for line in result.lines:
            log.write(escape(line))


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    summary_text: reactive[str] = reactive("")

    def render(self) -> str:
        if self.summary_text:
            return f"{self.summary_text} | Press 'q' to quit"
        return f"Progress: {self.completed}/{self.total} targets done | Running... | Press 'q' to quit"


class TargetStatusChange(Message):
    """Message for a target status change."""

    def __init__(self, index: int, status: NodeStatus) -> None:
        super().__init__()
        self.index = index
        self.status = status


class TargetDone(Message):
    """Message for a finished target."""

    def __init__(self, index: int, result: NodeResult) -> None:
        super().__init__()
        self.index = index
        self.result = result


class Dashboard(App):
    """Runs one dispatch round and shows each target as it finishes."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    TargetPanel {
        border: solid $primary;
        height: 100%;
        min-height: 8;
    }

    TargetPanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    TargetPanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(
        self,
        targets: list[Target],
        request: ExecutionRequest,
        dial_timeout: float,
        call_timeout: float,
        max_concurrency: int | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.targets = targets
        self.request = request
        self.dial_timeout = dial_timeout
        self.call_timeout = call_timeout
        self.max_concurrency = max_concurrency
        self.panels: list[TargetPanel] = []
        self.results: list[NodeResult] | None = None
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        for index, target in enumerate(self.targets):
            panel = TargetPanel(index, target, id=f"panel-{index}")
            self.panels.append(panel)
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start the dispatch round when the app mounts."""
        self.query_one("#status-bar", StatusBar).total = len(self.targets)
        self._worker = self.run_worker(self._run_dispatch(), exclusive=True)

    async def _run_dispatch(self) -> None:
        dispatcher = Dispatcher(
            on_status=lambda index, _target, status: self.post_message(
                TargetStatusChange(index, status)
            ),
            on_result=lambda index, result: self.post_message(TargetDone(index, result)),
            max_concurrency=self.max_concurrency,
        )
        start = time.monotonic()
        self.results = await dispatcher.dispatch(
            self.targets, self.request, self.dial_timeout, self.call_timeout
        )
        elapsed = time.monotonic() - start

        summary = summarize(self.results)
        text = (
            f"{summary.succeeded} successful, {summary.failed} failed of "
            f"{summary.total} | {summary.total_lines} lines | {elapsed:.2f}s"
        )
        self.query_one("#status-bar", StatusBar).summary_text = text

    def on_target_status_change(self, message: TargetStatusChange) -> None:
        self.panels[message.index].status = message.status

    def on_target_done(self, message: TargetDone) -> None:
        self.panels[message.index].show_result(message.result)
        self.query_one("#status-bar", StatusBar).completed += 1

    async def action_quit(self) -> None:
        """Quit the application."""
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()
