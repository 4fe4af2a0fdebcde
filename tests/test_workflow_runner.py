"""Tests for workflow execution and resume through the Orchestrator."""

import pytest

from looprunner.errors import CircularDependencyError, ConfigurationError, NotResumableError
from looprunner.orchestrator import ExitCode, Orchestrator, exit_code_for
from looprunner.state.snapshots import StepRecord, StepStatus, WorkflowSnapshot, WorkflowStatus
from looprunner.workflow.definition import WorkflowDefinition

from fakes import ScriptedExecutor, by_prompt, reply

CHAIN = """\
name: chain
global:
  max-parallel-workers: 1
steps:
  - name: A
    prompt: do A
  - name: B
    prompt: do B
    depends-on: [A]
  - name: C
    prompt: do C
    depends-on: [B]
"""

DIAMOND = """\
name: diamond
global:
  max-parallel-workers: 2
steps:
  - name: A
    prompt: do A
  - name: B
    prompt: do B
    depends-on: [A]
  - name: C
    prompt: do C
    depends-on: [A]
  - name: D
    prompt: do D
    depends-on: [B, C]
"""


def _orchestrator(config, store, script=None):
    executor = ScriptedExecutor(script or by_prompt({}))
    return Orchestrator(config, executor=executor, store=store), executor


def _steps_run(executor):
    return [p.split("\n", 1)[0] for p in executor.prompts()]


class TestWorkflowRun:
    """Fresh workflow runs."""

    def test_all_steps_complete_in_dependency_order(self, config, store):
        orch, executor = _orchestrator(config, store)
        result = orch.workflow_run(WorkflowDefinition.parse(DIAMOND))

        assert result.status is WorkflowStatus.COMPLETED
        assert exit_code_for(result) is ExitCode.OK
        order = _steps_run(executor)
        assert sorted(order) == ["do A", "do B", "do C", "do D"]
        assert order[0] == "do A" and order[-1] == "do D"
        assert all(r.status is StepStatus.COMPLETED for r in result.steps.values())

        snap = store.load_workflow(result.workflow_id)
        assert snap.status is WorkflowStatus.COMPLETED
        assert snap.total_cost_usd == pytest.approx(0.40)

    def test_step_tasks_are_linked_to_workflow(self, config, store):
        orch, _ = _orchestrator(config, store)
        result = orch.workflow_run(WorkflowDefinition.parse(CHAIN))
        task_id = result.steps["B"].task_id
        task_snap = store.load_task(task_id)
        assert task_snap.workflow_id == result.workflow_id
        assert task_snap.name == "B"

    def test_failure_skips_dependents(self, config, store):
        script = by_prompt({"do B": reply(success=False, error="tests red")})
        orch, executor = _orchestrator(config, store, script)
        result = orch.workflow_run(WorkflowDefinition.parse(DIAMOND))

        assert result.status is WorkflowStatus.FAILED
        assert result.steps["B"].status is StepStatus.FAILED
        assert result.steps["C"].status is StepStatus.COMPLETED
        assert result.steps["D"].status is StepStatus.SKIPPED
        assert "do D" not in _steps_run(executor)
        assert result.error == "tests red"
        assert exit_code_for(result) is ExitCode.FAILED

    def test_cycle_rejected_before_any_step(self, config, store):
        text = CHAIN.replace("  - name: A\n    prompt: do A\n",
                             "  - name: A\n    prompt: do A\n    depends-on: [C]\n")
        orch, executor = _orchestrator(config, store)
        with pytest.raises(CircularDependencyError):
            orch.workflow_run(WorkflowDefinition.parse(text))
        assert executor.calls == 0
        assert store.list_workflows() == []

    def test_unresolvable_prompt_rejected_before_any_step(self, config, store):
        text = CHAIN.replace("    prompt: do C\n", "    spec: missing.md\n")
        orch, executor = _orchestrator(config, store)
        with pytest.raises(ConfigurationError, match="cannot read spec"):
            orch.workflow_run(WorkflowDefinition.parse(text))
        assert executor.calls == 0

    def test_global_budget_interrupts_workflow(self, config, store):
        text = CHAIN.replace("  max-parallel-workers: 1\n",
                             "  max-parallel-workers: 1\n  budget-usd: 0.15\n")
        orch, executor = _orchestrator(config, store)
        result = orch.workflow_run(WorkflowDefinition.parse(text))

        assert _steps_run(executor) == ["do A", "do B"]
        assert result.status is WorkflowStatus.INTERRUPTED
        assert result.halt_reason == "budget_exceeded"
        assert result.steps["C"].status is StepStatus.PENDING
        assert result.error == "steps not run: C"
        assert exit_code_for(result) is ExitCode.BUDGET_EXCEEDED

    def test_validate_reports_groups(self, config, store):
        orch, _ = _orchestrator(config, store)
        result = orch.workflow_validate(WorkflowDefinition.parse(DIAMOND))
        assert result.valid
        assert result.groups == [["A"], ["B", "C"], ["D"]]
        assert exit_code_for(result) is ExitCode.OK

    def test_validate_missing_file(self, config, store, tmp_dir):
        orch, _ = _orchestrator(config, store)
        result = orch.workflow_validate(tmp_dir / "nope.yml")
        assert not result.valid
        assert exit_code_for(result) is ExitCode.INVALID


class TestWorkflowResume:
    """Resuming failed and interrupted workflows."""

    def _saved_snapshot(self, store, statuses):
        definition = WorkflowDefinition.parse(CHAIN)
        snapshot = WorkflowSnapshot(
            id="0f4c2a9e-1111-4222-8333-944455556666",
            name=definition.name,
            definition=definition.to_dict(),
            steps={name: StepRecord(status=status, cost_usd=0.10 if status is not StepStatus.PENDING else 0.0,
                                    iterations=1 if status is not StepStatus.PENDING else 0)
                   for name, status in statuses.items()},
            status=WorkflowStatus.FAILED,
        )
        store.save_workflow(snapshot)
        return snapshot

    def test_completed_steps_are_not_rerun(self, config, store):
        self._saved_snapshot(store, {
            "A": StepStatus.COMPLETED, "B": StepStatus.FAILED, "C": StepStatus.PENDING,
        })
        orch, executor = _orchestrator(config, store)
        result = orch.resume("0f4c2a9e")

        assert _steps_run(executor) == ["do B", "do C"]
        assert result.status is WorkflowStatus.COMPLETED
        assert result.executed_steps == ["B", "C"]
        assert result.steps["A"].iterations == 1
        assert result.steps["B"].iterations == 2
        assert result.total_cost_usd == pytest.approx(0.40)

    def test_resume_after_real_failure(self, config, store):
        orch, executor = _orchestrator(
            config, store, by_prompt({"do B": reply(success=False, error="flaky")})
        )
        first = orch.workflow_run(WorkflowDefinition.parse(CHAIN))
        assert first.steps["C"].status is StepStatus.SKIPPED

        executor.script = by_prompt({})
        second = orch.resume(first.short_id)
        assert second.status is WorkflowStatus.COMPLETED
        assert _steps_run(executor) == ["do A", "do B", "do B", "do C"]
        assert second.steps["B"].task_id != first.steps["B"].task_id

    def test_step_task_id_resumes_its_workflow(self, config, store):
        orch, executor = _orchestrator(
            config, store, by_prompt({"do B": reply(success=False)})
        )
        first = orch.workflow_run(WorkflowDefinition.parse(CHAIN))
        executor.script = by_prompt({})

        result = orch.resume(first.steps["B"].task_id)
        assert result.workflow_id == first.workflow_id
        assert result.status is WorkflowStatus.COMPLETED
        assert _steps_run(executor)[-2:] == ["do B", "do C"]

    def test_from_step_limits_scope(self, config, store):
        self._saved_snapshot(store, {
            "A": StepStatus.FAILED, "B": StepStatus.PENDING, "C": StepStatus.PENDING,
        })
        orch, executor = _orchestrator(config, store)
        result = orch.resume("0f4c2a9e", from_step="B")

        # A is out of scope and still failed, so B and C cannot run.
        assert _steps_run(executor) == []
        assert result.steps["A"].status is StepStatus.FAILED
        assert result.steps["B"].status is StepStatus.SKIPPED
        assert result.steps["C"].status is StepStatus.SKIPPED
        assert result.status is WorkflowStatus.FAILED

    def test_from_step_reruns_only_later_steps(self, config, store):
        self._saved_snapshot(store, {
            "A": StepStatus.COMPLETED, "B": StepStatus.COMPLETED, "C": StepStatus.FAILED,
        })
        orch, executor = _orchestrator(config, store)
        result = orch.resume("0f4c2a9e", from_step="C")
        assert _steps_run(executor) == ["do C"]
        assert result.status is WorkflowStatus.COMPLETED

    def test_unknown_from_step(self, config, store):
        self._saved_snapshot(store, {
            "A": StepStatus.COMPLETED, "B": StepStatus.FAILED, "C": StepStatus.PENDING,
        })
        orch, _ = _orchestrator(config, store)
        with pytest.raises(ConfigurationError, match="no step 'Z'"):
            orch.resume("0f4c2a9e", from_step="Z")

    def test_completed_workflow_not_resumable(self, config, store):
        orch, _ = _orchestrator(config, store)
        result = orch.workflow_run(WorkflowDefinition.parse(CHAIN))
        with pytest.raises(NotResumableError):
            orch.resume(result.workflow_id)
