from __future__ import annotations

import asyncio
from queue import SimpleQueue
import threading

import pytest
from textual.widgets import DataTable

from reviewloop import console
from reviewloop.loop_controller import LoopOutcome, LoopSignal


def test_console_helper_functions() -> None:
    assert console._render_detail(None) == "-"
    assert console._render_detail("a\n  b") == "a b"
    long_detail = console._render_detail("x" * 200)
    assert len(long_detail) == 80
    assert long_detail.endswith("...")

    summary = console._summary_text(
        title="o/r#7",
        iteration=2,
        state="await_review",
        last_verdict="needs revision (bug)",
        finished=None,
    )
    assert "o/r#7  iteration=2  state=await_review" in summary
    assert "last verdict: needs revision (bug)" in summary
    assert "finished" not in summary

    done = console._summary_text(
        title="o/r#7",
        iteration=2,
        state="merge_requested",
        last_verdict=None,
        finished=LoopSignal(kind="finished", iteration=2, state="merge_requested", detail="ok"),
    )
    assert "last verdict: -" in done
    assert "finished: merge_requested (ok); press q to exit" in done


def test_app_drains_signals_into_table() -> None:
    signals: SimpleQueue[LoopSignal] = SimpleQueue()
    app = console.ReviewLoopApp(title_text="o/r#7", signal_queue=signals)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            table = app.query_one("#events-table", DataTable)
            assert table.row_count == 0
            assert "state=starting" in app.summary_text

            signals.put(LoopSignal(kind="transition", iteration=1, state="await_review"))
            signals.put(
                LoopSignal(kind="verdict", iteration=1, state="classify", detail="approved")
            )
            signals.put(
                LoopSignal(
                    kind="finished", iteration=1, state="merge_requested", detail="auto-merge"
                )
            )
            app.drain_signals()

            assert table.row_count == 3
            assert app.finished_signal is not None
            assert app.finished_signal.state == "merge_requested"
            assert "last verdict: approved" in app.summary_text
            assert "finished: merge_requested (auto-merge)" in app.summary_text

            app.drain_signals()
            assert table.row_count == 3

    asyncio.run(run_app())


def test_fatal_signal_keeps_last_iteration() -> None:
    signals: SimpleQueue[LoopSignal] = SimpleQueue()
    app = console.ReviewLoopApp(title_text="o/r#7", signal_queue=signals)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            signals.put(LoopSignal(kind="transition", iteration=3, state="await_revision"))
            signals.put(LoopSignal(kind="finished", iteration=0, state="fatal_error", detail="x"))
            app.drain_signals()
            assert "iteration=3" in app.summary_text
            assert "state=fatal_error" in app.summary_text

    asyncio.run(run_app())


class _FinishingApp:
    """Stands in for the live view: returns once the loop reports it has finished."""

    def __init__(self, *, title_text: str, signal_queue: SimpleQueue[LoopSignal]) -> None:
        self.title_text = title_text
        self._signal_queue = signal_queue
        self.finished_signal: LoopSignal | None = None

    def run(self) -> None:
        while True:
            signal = self._signal_queue.get(timeout=5)
            if signal.kind == "finished":
                self.finished_signal = signal
                return


def test_run_console_mode_requires_interactive_terminal(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(console, "_is_interactive_terminal", lambda: False)
    with pytest.raises(console.ConsoleUnavailableError, match="interactive terminal"):
        console.run_console_mode(title_text="t", run_loop=lambda sink: None)  # type: ignore


def test_run_console_mode_returns_loop_outcome(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(console, "_is_interactive_terminal", lambda: True)
    monkeypatch.setattr(console, "ReviewLoopApp", _FinishingApp)
    outcome = LoopOutcome(kind="merge_requested", iteration=1, detail="ok")
    thread_names: list[str] = []

    def run_loop(sink: object) -> LoopOutcome:
        assert callable(sink)
        thread_names.append(threading.current_thread().name)
        sink(LoopSignal(kind="finished", iteration=1, state="merge_requested"))
        return outcome

    assert console.run_console_mode(title_text="o/r#1", run_loop=run_loop) == outcome
    assert thread_names == ["reviewloop-loop"]


def test_run_console_mode_reraises_loop_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(console, "_is_interactive_terminal", lambda: True)
    monkeypatch.setattr(console, "ReviewLoopApp", _FinishingApp)

    def run_loop(sink: object) -> LoopOutcome:
        _ = sink
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        console.run_console_mode(title_text="o/r#1", run_loop=run_loop)


def test_run_console_mode_closed_early_returns_none(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(console, "_is_interactive_terminal", lambda: True)
    release = threading.Event()

    class _ClosedApp(_FinishingApp):
        def run(self) -> None:
            return

    monkeypatch.setattr(console, "ReviewLoopApp", _ClosedApp)

    def run_loop(sink: object) -> LoopOutcome:
        _ = sink
        release.wait(timeout=5)
        return LoopOutcome(kind="merge_requested", iteration=1, detail="late")

    try:
        assert console.run_console_mode(title_text="o/r#1", run_loop=run_loop) is None
    finally:
        release.set()
