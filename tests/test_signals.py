"""Tests for the Signal Tracker.

Covers chunk buffering, every todo and loop encoding, completion tags,
the auto-enable policy, debounced emission and reset strengths.
"""

from __future__ import annotations

import pytest

from overseer.core.models import TodoStatus
from overseer.core.signals import MAX_TODOS, SignalTracker, strip_ansi, todo_id_for
from overseer.core.timers import ManualTimerService


def _lines(tracker: SignalTracker, *lines: str) -> None:
    tracker.process_chunk("\n".join(lines) + "\n")


class TestChunking:
    """Line buffering across arbitrary chunk boundaries."""

    def test_incomplete_line_waits_for_newline(self, tracker):
        tracker.process_chunk("- [ ] Write the parser")
        assert tracker.todos == []
        tracker.process_chunk("\n")
        assert [t.content for t in tracker.todos] == ["Write the parser"]

    def test_todo_split_across_chunks_is_one_todo(self, tracker):
        tracker.process_chunk("- [ ] Add integ")
        tracker.process_chunk("ration tests\n")
        todos = tracker.todos
        assert len(todos) == 1
        assert todos[0].content == "Add integration tests"

    def test_ansi_sequences_are_stripped(self, tracker):
        tracker.process_chunk("\x1b[32m- [x] Colored task\x1b[0m\r\n")
        todos = tracker.todos
        assert todos[0].content == "Colored task"
        assert todos[0].status == TodoStatus.COMPLETED

    def test_strip_ansi_handles_osc(self):
        assert strip_ansi("\x1b]0;title\x07hello") == "hello"


class TestTodoEncodings:
    """The five textual todo encodings."""

    @pytest.mark.parametrize(
        "line,content,status",
        [
            ("- [ ] Pending item", "Pending item", TodoStatus.PENDING),
            ("- [x] Done item", "Done item", TodoStatus.COMPLETED),
            ("* [X] Upper mark", "Upper mark", TodoStatus.COMPLETED),
            ("Todo: ☐ Icon pending", "Icon pending", TodoStatus.PENDING),
            ("Todo: ◐ Icon working", "Icon working", TodoStatus.IN_PROGRESS),
            ("Todo: ⏳ Hourglass", "Hourglass", TodoStatus.IN_PROGRESS),
            ("Todo: ✓ Icon done", "Icon done", TodoStatus.COMPLETED),
            ("Todo: ✅ Green done", "Green done", TodoStatus.COMPLETED),
            ("- Refactor module (in_progress)", "Refactor module", TodoStatus.IN_PROGRESS),
            ("* Ship it (completed)", "Ship it", TodoStatus.COMPLETED),
            ("☐ Native pending", "Native pending", TodoStatus.PENDING),
            ("   ☒ Native done", "Native done", TodoStatus.COMPLETED),
            ("  ⎿  ◐ Tree working", "Tree working", TodoStatus.IN_PROGRESS),
        ],
    )
    def test_encoding(self, tracker, line, content, status):
        _lines(tracker, line)
        todos = tracker.todos
        assert len(todos) == 1
        assert todos[0].content == content
        assert todos[0].status == status

    def test_whitespace_only_content_ignored(self, tracker):
        _lines(tracker, "- [ ]    ", "☐   ")
        assert tracker.todos == []

    def test_plain_lines_are_ignored(self, tracker):
        _lines(tracker, "Compiling 42 files", "All good here")
        assert tracker.todos == []

    def test_same_content_updates_in_place(self, tracker):
        _lines(tracker, "- [ ] Write docs")
        _lines(tracker, "- [x] Write docs")
        todos = tracker.todos
        assert len(todos) == 1
        assert todos[0].status == TodoStatus.COMPLETED
        assert todos[0].id == todo_id_for("Write docs")

    def test_identity_ignores_whitespace_and_case(self):
        assert todo_id_for("Write  docs") == todo_id_for("write docs")

    def test_completed_todo_is_not_reopened(self, tracker):
        """A stale redraw with a lower status never regresses a completed todo."""
        _lines(tracker, "☒ Migrate schema")
        _lines(tracker, "☐ Migrate schema")
        _lines(tracker, "◐ Migrate schema")
        assert tracker.todos[0].status == TodoStatus.COMPLETED

    def test_in_progress_can_move_back_to_pending(self, tracker):
        _lines(tracker, "◐ Flaky step")
        _lines(tracker, "☐ Flaky step")
        assert tracker.todos[0].status == TodoStatus.PENDING

    def test_cap_evicts_oldest(self, timers):
        tracker = SignalTracker(timers)
        tracker.enable()
        for i in range(MAX_TODOS + 1):
            _lines(tracker, f"- [ ] Task number {i}")
            timers.advance(1)
        todos = tracker.todos
        assert len(todos) == MAX_TODOS
        contents = {t.content for t in todos}
        assert "Task number 0" not in contents
        assert f"Task number {MAX_TODOS}" in contents


class TestLoopSignals:
    """Loop start, elapsed, cycle and iteration markers."""

    def test_loop_start_activates(self, tracker, timers):
        _lines(tracker, "Loop started at 10:42")
        state = tracker.state
        assert state.active is True
        assert state.started_at == timers.now()

    def test_elapsed_hours(self, tracker):
        _lines(tracker, "Elapsed: 2.5 hours")
        assert tracker.state.elapsed_hours == 2.5
        _lines(tracker, "Elapsed: 3 hours")
        assert tracker.state.elapsed_hours == 3.0

    def test_cycle_count_only_moves_forward(self, tracker):
        _lines(tracker, "respawn cycle #4")
        _lines(tracker, "cycle #2")
        assert tracker.state.cycle_count == 4

    @pytest.mark.parametrize(
        "line,cycle,max_iter",
        [
            ("Iteration 3/10", 3, 10),
            ("[5/20] running checks", 5, 20),
            ("Iteration 7", 7, None),
        ],
    )
    def test_iteration_spellings(self, tracker, line, cycle, max_iter):
        _lines(tracker, line)
        state = tracker.state
        assert state.cycle_count == cycle
        assert state.max_iterations == max_iter

    @pytest.mark.parametrize("line", ["max-iterations: 12", "maxIterations=12", "max_iterations = 12"])
    def test_max_iteration_spellings(self, tracker, line):
        _lines(tracker, line)
        assert tracker.state.max_iterations == 12

    def test_activity_updates_last_activity_without_events(self, tracker, timers):
        loop_events = []
        tracker.events.on("loop_update", loop_events.append)
        timers.advance(10)
        _lines(tracker, "⏺ TodoWrite(todos)")
        tracker.flush()
        assert tracker.state.last_activity == timers.now()
        assert loop_events == []


class TestCompletion:
    """<promise> completion tags."""

    def test_promise_fires_once_and_deactivates(self, tracker):
        phrases = []
        tracker.events.on("completion", phrases.append)
        _lines(tracker, "Loop started at 09:00")
        _lines(tracker, "All done <promise>TESTS-PASS</promise>")
        assert phrases == ["TESTS-PASS"]
        state = tracker.state
        assert state.active is False
        assert state.completion_phrase == "TESTS-PASS"

    def test_promise_split_across_chunks(self, tracker):
        phrases = []
        tracker.events.on("completion", phrases.append)
        tracker.process_chunk("<prom")
        tracker.process_chunk("ise>DONE_")
        tracker.process_chunk("42</prom")
        assert phrases == []
        tracker.process_chunk("ise>\n")
        assert phrases == ["DONE_42"]

    def test_unclosed_promise_does_not_fire(self, tracker):
        phrases = []
        tracker.events.on("completion", phrases.append)
        _lines(tracker, "<promise>ALMOST", "nothing else")
        assert phrases == []

    def test_invalid_phrase_charset_does_not_fire(self, tracker):
        phrases = []
        tracker.events.on("completion", phrases.append)
        _lines(tracker, "<promise>has spaces here</promise>")
        assert phrases == []


class TestAutoEnable:
    """Enable state and the auto-enable policy."""

    def test_disabled_tracker_ignores_patterns(self, timers):
        tracker = SignalTracker(timers)
        _lines(tracker, "- [ ] Ignored", "Loop started at 1")
        assert tracker.todos == []
        assert tracker.state.active is False
        assert tracker.state.enabled is False

    def test_policy_allows_patterns_to_enable(self, timers):
        tracker = SignalTracker(timers)
        tracker.allow_auto_enable()
        assert tracker.state.auto_enable_allowed is True
        _lines(tracker, "- [ ] First task")
        assert tracker.state.enabled is True
        assert [t.content for t in tracker.todos] == ["First task"]

    def test_policy_is_independent_of_enabled(self, timers):
        tracker = SignalTracker(timers)
        tracker.enable()
        tracker.disable()
        assert tracker.state.auto_enable_allowed is False
        tracker.allow_auto_enable()
        tracker.disable()
        assert tracker.state.auto_enable_allowed is True

    def test_disallow_blocks_auto_enable(self, timers):
        tracker = SignalTracker(timers)
        tracker.allow_auto_enable()
        tracker.disallow_auto_enable()
        _lines(tracker, "Loop started at 1")
        assert tracker.state.enabled is False

    def test_non_matching_output_does_not_auto_enable(self, timers):
        tracker = SignalTracker(timers)
        tracker.allow_auto_enable()
        _lines(tracker, "just some compiler noise")
        assert tracker.state.enabled is False

    def test_split_promise_auto_enables_and_fires(self, timers):
        tracker = SignalTracker(timers)
        tracker.allow_auto_enable()
        phrases = []
        tracker.events.on("completion", phrases.append)
        tracker.process_chunk("<promise>TESTS-")
        assert tracker.state.enabled is False
        tracker.process_chunk("PASS</promise>\n")
        assert tracker.state.enabled is True
        assert phrases == ["TESTS-PASS"]

    def test_split_todo_auto_enables(self, timers):
        tracker = SignalTracker(timers)
        tracker.allow_auto_enable()
        tracker.process_chunk("-")
        tracker.process_chunk(" [ ] Write tests\n")
        assert tracker.state.enabled is True
        assert [t.content for t in tracker.todos] == ["Write tests"]

    def test_finished_noise_lines_are_not_replayed(self, timers):
        tracker = SignalTracker(timers)
        tracker.allow_auto_enable()
        tracker.process_chunk("compiling\nstill going\n")
        _lines(tracker, "- [ ] Real task")
        assert [t.content for t in tracker.todos] == ["Real task"]


class TestEmission:
    """Debounced notifications and explicit flush."""

    def test_rapid_mutations_coalesce(self, tracker, timers):
        updates = []
        tracker.events.on("todo_update", updates.append)
        _lines(tracker, "- [ ] One")
        _lines(tracker, "- [ ] Two")
        _lines(tracker, "- [x] One")
        assert updates == []
        timers.advance(0.05)
        assert len(updates) == 1
        assert [t.content for t in updates[0]] == ["One", "Two"]

    def test_flush_delivers_immediately(self, tracker):
        updates = []
        tracker.events.on("todo_update", updates.append)
        _lines(tracker, "- [ ] Now")
        tracker.flush()
        assert len(updates) == 1
        tracker.flush()
        assert len(updates) == 1

    def test_loop_update_after_flush(self, tracker):
        states = []
        tracker.events.on("loop_update", states.append)
        _lines(tracker, "Iteration 2/5")
        tracker.flush()
        assert states[-1].cycle_count == 2


class TestReset:
    """Soft and full reset."""

    def test_soft_reset_keeps_enabled(self, tracker):
        tracker.allow_auto_enable()
        _lines(tracker, "- [ ] Task", "Loop started at 1")
        tracker.reset(soft=True)
        state = tracker.state
        assert tracker.todos == []
        assert state.active is False
        assert state.enabled is True
        assert state.auto_enable_allowed is True

    def test_full_reset_restores_defaults(self, tracker):
        tracker.allow_auto_enable()
        _lines(tracker, "- [ ] Task")
        tracker.reset()
        state = tracker.state
        assert tracker.todos == []
        assert state.enabled is False
        assert state.auto_enable_allowed is False


class TestDeterminism:
    """Identical input yields identical results."""

    STREAM = (
        "Loop started at 08:00\n- [ ] Parse input\n- [ ] Emit out",
        "put\nIteration 2/4\n☒ Parse input\nElapsed: 1.5 hours\n",
        "Todo: ◐ Emit output\n<promise>ALL_DONE</promise>\n",
    )

    def _run(self) -> tuple[list, object]:
        tracker = SignalTracker(ManualTimerService())
        tracker.enable()
        for chunk in self.STREAM:
            tracker.process_chunk(chunk)
        tracker.flush()
        return tracker.todos, tracker.state

    def test_replay_is_deterministic(self):
        todos_a, state_a = self._run()
        todos_b, state_b = self._run()
        assert todos_a == todos_b
        assert state_a == state_b
        assert [(t.content, t.status) for t in todos_a] == [
            ("Parse input", TodoStatus.COMPLETED),
            ("Emit output", TodoStatus.IN_PROGRESS),
        ]
