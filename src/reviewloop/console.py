from __future__ import annotations

from datetime import datetime
from queue import Empty, SimpleQueue
import sys
from threading import Thread
from typing import Callable

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from reviewloop.loop_controller import LoopOutcome, LoopSignal


LoopRunner = Callable[[Callable[[LoopSignal], None]], LoopOutcome]

_SIGNAL_DRAIN_SECONDS = 0.2
_FINISH_JOIN_SECONDS = 5.0
_DETAIL_MAX_CHARS = 80
_FATAL_STATE = "fatal_error"


class ConsoleUnavailableError(RuntimeError):
    """The live view cannot start because stdin or stdout is not a terminal."""


class ReviewLoopApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        title_text: str,
        signal_queue: SimpleQueue[LoopSignal],
    ) -> None:
        super().__init__()
        self._title_text = title_text
        self._signal_queue = signal_queue
        self._iteration = 1
        self._state = "starting"
        self._last_verdict: str | None = None
        self._finished: LoopSignal | None = None
        self.summary_text = ""

    @property
    def finished_signal(self) -> LoopSignal | None:
        return self._finished

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Transitions", classes="panel-title")
            yield DataTable(id="events-table")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#events-table", DataTable)
        table.add_columns("Time", "Iteration", "Kind", "State", "Detail")
        self._refresh_summary()
        self.set_interval(_SIGNAL_DRAIN_SECONDS, self.drain_signals)

    def drain_signals(self) -> None:
        table = self.query_one("#events-table", DataTable)
        changed = False
        while True:
            try:
                signal = self._signal_queue.get_nowait()
            except Empty:
                break
            changed = True
            if signal.iteration > 0:
                self._iteration = signal.iteration
            self._state = signal.state
            if signal.kind == "verdict":
                self._last_verdict = signal.detail
            if signal.kind == "finished":
                self._finished = signal
            table.add_row(
                datetime.now().strftime("%H:%M:%S"),
                str(signal.iteration),
                signal.kind,
                signal.state,
                _render_detail(signal.detail),
            )
        if changed:
            self._refresh_summary()

    def _refresh_summary(self) -> None:
        self.summary_text = _summary_text(
            title=self._title_text,
            iteration=self._iteration,
            state=self._state,
            last_verdict=self._last_verdict,
            finished=self._finished,
        )
        self.query_one("#summary", Static).update(self.summary_text)


def run_console_mode(*, title_text: str, run_loop: LoopRunner) -> LoopOutcome | None:
    """Run one loop on a worker thread while a live view follows its transitions.

    Returns None when the view is closed before the loop finishes; the worker is a
    daemon thread and ends with the process.
    """
    if not _is_interactive_terminal():
        raise ConsoleUnavailableError(
            "Console mode requires an interactive terminal. Use `reviewloop run` instead."
        )

    signals: SimpleQueue[LoopSignal] = SimpleQueue()
    outcomes: list[LoopOutcome] = []
    loop_errors: list[BaseException] = []

    def run_loop_thread() -> None:
        try:
            outcomes.append(run_loop(signals.put))
        except BaseException as exc:  # noqa: BLE001
            loop_errors.append(exc)
            signals.put(
                LoopSignal(kind="finished", iteration=0, state=_FATAL_STATE, detail=str(exc))
            )

    loop_thread = Thread(target=run_loop_thread, name="reviewloop-loop", daemon=True)
    loop_thread.start()

    app = ReviewLoopApp(title_text=title_text, signal_queue=signals)
    app.run()
    if app.finished_signal is not None:
        # The finished signal is emitted just before the worker returns its outcome.
        loop_thread.join(timeout=_FINISH_JOIN_SECONDS)

    if loop_errors:
        error = loop_errors[0]
        if isinstance(error, Exception):
            raise error
        raise RuntimeError("Review loop thread failed with a non-Exception error.") from error
    if outcomes:
        return outcomes[0]
    return None


def _summary_text(
    *,
    title: str,
    iteration: int,
    state: str,
    last_verdict: str | None,
    finished: LoopSignal | None,
) -> str:
    lines = [f"{title}  iteration={iteration}  state={state}"]
    lines.append(f"last verdict: {last_verdict or '-'}")
    if finished is not None:
        detail = _render_detail(finished.detail)
        lines.append(f"finished: {finished.state} ({detail}); press q to exit")
    return "\n".join(lines)


def _render_detail(detail: str | None) -> str:
    if not detail:
        return "-"
    compact = " ".join(detail.split())
    if len(compact) <= _DETAIL_MAX_CHARS:
        return compact
    return f"{compact[: _DETAIL_MAX_CHARS - 3]}..."


def _is_interactive_terminal() -> bool:
    return bool(sys.stdin.isatty() and sys.stdout.isatty())
