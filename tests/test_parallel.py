"""Tests for the ParallelExecutor worker pool."""

import threading
import time

import pytest
from rich.console import Console

from looprunner.config import ParallelConfig
from looprunner.engine.events import EventType
from looprunner.errors import InvalidTransitionError
from looprunner.models import LoopResult, LoopStatus, Task
from looprunner.orchestrator import ExitCode, Orchestrator, exit_code_for
from looprunner.parallel.board import BoardState, TaskBoard
from looprunner.parallel.workspace import WorkspaceManager
from looprunner.rendering import render_parallel_result

from fakes import ScriptedExecutor, by_prompt, reply

_TERMINAL_EVENTS = (EventType.TASK_COMPLETED, EventType.TASK_FAILED, EventType.HALTED)


def _orchestrator(config, store, script=None, jitter=0.0):
    executor = ScriptedExecutor(script or by_prompt({}), jitter=jitter)
    return Orchestrator(config, executor=executor, store=store), executor


def _slow(cost=0.01, delay=0.05, done=False, fail=False):
    def respond(request):
        time.sleep(delay)
        return reply(cost=cost, done=done, success=not fail)
    return respond


class TestBoundedConcurrency:
    """Never more than worker_count tasks in flight."""

    def test_at_most_two_concurrent(self, config, store):
        orch, executor = _orchestrator(config, store, jitter=0.03)
        tasks = [orch.new_task(f"task {i}") for i in range(8)]
        result = orch.parallel(tasks, ParallelConfig(worker_count=2))

        assert executor.max_active <= 2
        assert executor.calls == 8
        assert result.succeeded == 8
        assert result.all_succeeded
        assert set(result.results) == {t.id for t in tasks}
        assert exit_code_for(result) is ExitCode.OK

    def test_whole_tasks_bounded_across_iterations(self, config, store):
        config.loop.iteration_delay = 0.01
        orch, _ = _orchestrator(config, store, by_prompt({"task": _slow(delay=0.02)}))
        lock = threading.Lock()
        in_flight = [0]
        peak = [0]

        def track(event):
            with lock:
                if event.type is EventType.STARTED:
                    in_flight[0] += 1
                    peak[0] = max(peak[0], in_flight[0])
                elif event.type in _TERMINAL_EVENTS:
                    in_flight[0] -= 1

        orch.events.subscribe(track)
        tasks = [orch.new_task(f"task {i}", max_iterations=3) for i in range(6)]
        result = orch.parallel(tasks, ParallelConfig(worker_count=2))

        assert peak[0] == 2
        assert in_flight[0] == 0
        assert all(r.status is LoopStatus.MAX_ITERATIONS_REACHED for r in result.results.values())
        assert all(r.iteration == 3 for r in result.results.values())

    def test_pool_actually_runs_in_parallel(self, config, store):
        script = by_prompt({"task": _slow(done=True, delay=0.1)})
        orch, executor = _orchestrator(config, store, script)
        tasks = [orch.new_task(f"task {i}") for i in range(4)]
        orch.parallel(tasks, ParallelConfig(worker_count=4))
        assert executor.max_active > 1

    def test_costs_summed_per_task(self, config, store):
        orch, _ = _orchestrator(config, store, by_prompt({}, default=reply(cost=0.25, done=True)))
        tasks = [orch.new_task(f"task {i}") for i in range(3)]
        result = orch.parallel(tasks, ParallelConfig(worker_count=3))
        assert result.total_cost_usd == pytest.approx(0.75)
        assert all(r.cost_usd == pytest.approx(0.25) for r in result.results.values())

    def test_finished_event_emitted_once(self, config, store):
        orch, _ = _orchestrator(config, store)
        orch.parallel([orch.new_task("one"), orch.new_task("two")], ParallelConfig(worker_count=2))
        finished = orch.events.get_history(EventType.FINISHED)
        assert len(finished) == 1
        assert finished[0].data["succeeded"] == 2


class TestFailFast:
    """A failure closes the gate for everyone."""

    def test_failure_stops_dispatch_and_halts_in_flight(self, config, store):
        script = by_prompt({
            "boom": _slow(delay=0.15, fail=True),
            "slow": _slow(),
        })
        orch, _ = _orchestrator(config, store, script)
        boom = orch.new_task("boom")
        slow = [orch.new_task(f"slow {i}", max_iterations=200) for i in range(3)]
        result = orch.parallel([boom] + slow, ParallelConfig(worker_count=2, fail_fast=True))

        assert result.halted_early
        assert result.halt_reason == "task_failed"
        assert result.results[boom.id].status is LoopStatus.ERROR
        assert result.results[slow[0].id].status is LoopStatus.HALTED
        assert result.not_started == [slow[1].id, slow[2].id]
        assert exit_code_for(result) is ExitCode.FAILED

        assert (result.failed, result.interrupted) == (1, 1)
        finished = orch.events.get_history(EventType.FINISHED)[0]
        assert finished.data["interrupted"] == 1
        console = Console(record=True, width=200)
        render_parallel_result(console, [boom] + slow, result)
        assert "0/4 completed · 1 failed · 1 interrupted" in console.export_text()

    def test_without_fail_fast_others_finish(self, config, store):
        script = by_prompt({"boom": reply(success=False)})
        orch, _ = _orchestrator(config, store, script)
        tasks = [orch.new_task("boom")] + [orch.new_task(f"ok {i}") for i in range(3)]
        result = orch.parallel(tasks, ParallelConfig(worker_count=2))

        assert not result.halted_early
        assert result.succeeded == 3
        assert result.failed == 1
        assert result.not_started == []


class TestGlobalBudget:
    """The shared budget stops the whole run."""

    def test_single_worker_stops_after_crossing(self, config, store):
        orch, executor = _orchestrator(config, store, by_prompt({}, default=reply(cost=0.10)))
        tasks = [orch.new_task(f"task {i}", max_iterations=10) for i in range(3)]
        result = orch.parallel(tasks, ParallelConfig(worker_count=1, global_budget_usd=0.25))

        assert executor.calls == 3
        assert result.total_cost_usd == pytest.approx(0.30)
        assert result.halt_reason == "budget_exceeded"
        assert result.results[tasks[0].id].status is LoopStatus.HALTED
        assert result.not_started == [tasks[1].id, tasks[2].id]
        assert exit_code_for(result) is ExitCode.BUDGET_EXCEEDED

    def test_overshoot_bounded_by_in_flight_iterations(self, config, store):
        orch, _ = _orchestrator(config, store, by_prompt({}, default=reply(cost=0.10)), jitter=0.02)
        tasks = [orch.new_task(f"task {i}", max_iterations=20) for i in range(4)]
        result = orch.parallel(tasks, ParallelConfig(worker_count=2, global_budget_usd=0.50))

        assert result.halted_early
        assert 0.50 <= result.total_cost_usd <= 0.50 + 2 * 0.10 + 1e-9


class TestWorkspaces:
    """Shared and isolated working directories."""

    def test_shared_mode_uses_project_root(self, config, store, tmp_dir):
        orch, executor = _orchestrator(config, store)
        orch.parallel([orch.new_task("a"), orch.new_task("b")], ParallelConfig(worker_count=2))
        assert {r.working_dir for r in executor.requests} == {tmp_dir.resolve()}

    def test_isolated_mode_copies_project(self, config, store, tmp_dir):
        (tmp_dir / "README.md").write_text("hello", encoding="utf-8")
        orch, executor = _orchestrator(config, store)
        tasks = [orch.new_task("a"), orch.new_task("b")]
        orch.parallel(tasks, ParallelConfig(worker_count=2, isolate_workspaces=True))

        dirs = {r.working_dir for r in executor.requests}
        assert len(dirs) == 2
        for d in dirs:
            assert (d / "README.md").read_text(encoding="utf-8") == "hello"
            assert not (d / ".looprunner").exists()

    def test_workspace_failure_fails_only_that_task(self, config, store, monkeypatch):
        orch, executor = _orchestrator(config, store)
        bad = orch.new_task("bad")
        good = orch.new_task("good")
        original = WorkspaceManager.acquire

        def acquire(self, task):
            if task.id == bad.id:
                raise OSError("no space left")
            return original(self, task)

        monkeypatch.setattr(WorkspaceManager, "acquire", acquire)
        result = orch.parallel([bad, good], ParallelConfig(worker_count=2, isolate_workspaces=True))

        assert result.results[bad.id].status is LoopStatus.ERROR
        assert "no space left" in result.results[bad.id].error
        assert result.results[good.id].succeeded
        assert executor.calls == 1

    def test_release_keeps_the_copy(self, tmp_dir):
        manager = WorkspaceManager(tmp_dir, tmp_dir.parent / "workspaces", isolate=True)
        task = Task(prompt="x")
        path = manager.acquire(task)
        assert manager.acquire(task) == path
        assert manager.release(task.id) == path
        assert path.is_dir()
        assert manager.release(task.id) is None

    def test_state_dir_inside_project_not_copied(self, config, tmp_dir):
        (tmp_dir / "README.md").write_text("hello", encoding="utf-8")
        config.state_dir = str(tmp_dir / "state")
        executor = ScriptedExecutor(by_prompt({}))
        orch = Orchestrator(config, executor=executor)
        tasks = [orch.new_task("a"), orch.new_task("b")]
        result = orch.parallel(tasks, ParallelConfig(worker_count=2, isolate_workspaces=True))

        assert result.all_succeeded
        for request in executor.requests:
            assert request.working_dir.resolve().parent == (tmp_dir / "state" / "workspaces").resolve()
            assert (request.working_dir / "README.md").exists()
            assert not (request.working_dir / "state").exists()

    def test_exclude_skips_nested_paths(self, tmp_dir):
        (tmp_dir / "keep.txt").write_text("k", encoding="utf-8")
        (tmp_dir / "cache" / "deep").mkdir(parents=True)
        (tmp_dir / "cache" / "deep" / "blob").write_text("b", encoding="utf-8")
        manager = WorkspaceManager(tmp_dir, tmp_dir / "ws", isolate=True,
                                   exclude=[tmp_dir / "cache"])
        path = manager.acquire(Task(prompt="x"))
        assert sorted(p.name for p in path.iterdir()) == ["keep.txt"]

    def test_cleanup_removes_directories(self, tmp_dir):
        manager = WorkspaceManager(tmp_dir, tmp_dir.parent / "workspaces", isolate=True)
        first, second = Task(prompt="a"), Task(prompt="b")
        path = manager.acquire(first)
        manager.acquire(second)
        assert manager.cleanup([first.id, "unknown"]) == [first.id]
        assert not path.exists()
        assert (tmp_dir.parent / "workspaces" / second.id).is_dir()

    def test_purge_removes_task_workspaces(self, config, store):
        orch, executor = _orchestrator(config, store)
        tasks = [orch.new_task("a"), orch.new_task("b")]
        orch.parallel(tasks, ParallelConfig(worker_count=2, isolate_workspaces=True))
        dirs = {r.working_dir for r in executor.requests}
        assert all(d.is_dir() for d in dirs)

        time.sleep(0.01)
        purged = orch.purge(0)
        assert {t.id for t in tasks} <= set(purged)
        assert not any(d.exists() for d in dirs)



class TestTaskBoard:
    """Board state machine without a scheduler."""

    def test_monotonic_states(self):
        board = TaskBoard()
        task = Task(prompt="x")
        board.add_tasks([task])
        assert board.get_assignable() == [task]
        board.start(task.id, "worker-0")
        assert board.get_assignment(task.id) == "worker-0"
        assert board.get_assignable() == []
        board.finish(task.id, LoopResult(task_id=task.id, status=LoopStatus.COMPLETED, iteration=1))
        assert board.get_state(task.id) is BoardState.COMPLETED
        assert board.all_resolved()
        with pytest.raises(InvalidTransitionError):
            board.start(task.id, "worker-1")
