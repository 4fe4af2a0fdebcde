"""Tests for DagScheduler validation, ordering and readiness."""

import pytest

from looprunner.errors import CircularDependencyError, ConfigurationError, InvalidTransitionError
from looprunner.state.snapshots import StepStatus
from looprunner.workflow.definition import WorkflowDefinition, WorkflowStep
from looprunner.workflow.scheduler import DagScheduler


def _step(name, depends_on=(), prompt="do it", parallel_group=None):
    return WorkflowStep(name=name, prompt=prompt, depends_on=tuple(depends_on),
                        parallel_group=parallel_group)


def _definition(*steps):
    return WorkflowDefinition(name="wf", steps=tuple(steps))


def _diamond():
    return DagScheduler([
        _step("A"),
        _step("B", ["A"]),
        _step("C", ["A"]),
        _step("D", ["B", "C"]),
    ])


class TestGraphValidation:
    """Construction-time checks."""

    def test_duplicate_names_rejected(self):
        with pytest.raises(ConfigurationError, match="Duplicate step name: A"):
            DagScheduler([_step("A"), _step("A")])

    def test_unknown_dependency_rejected(self):
        with pytest.raises(ConfigurationError, match="unknown step 'Z'"):
            DagScheduler([_step("A", ["Z"])])

    def test_two_step_cycle_reports_path(self):
        with pytest.raises(CircularDependencyError) as exc:
            DagScheduler([_step("A", ["B"]), _step("B", ["A"])])
        assert exc.value.cycle == ["A", "B", "A"]

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(CircularDependencyError) as exc:
            DagScheduler([_step("A", ["A"])])
        assert exc.value.cycle == ["A", "A"]

    def test_longer_cycle_behind_valid_prefix(self):
        with pytest.raises(CircularDependencyError) as exc:
            DagScheduler([
                _step("root"),
                _step("X", ["root", "Z"]),
                _step("Y", ["X"]),
                _step("Z", ["Y"]),
            ])
        cycle = exc.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"X", "Y", "Z"}

    def test_cycle_is_configuration_error(self):
        assert issubclass(CircularDependencyError, ConfigurationError)


class TestOrdering:
    """Topological order and execution groups."""

    def test_dependencies_come_first(self):
        order = _diamond().topological_order()
        assert order.index("A") < order.index("B") < order.index("D")
        assert order.index("C") < order.index("D")

    def test_ties_follow_declaration_order(self):
        scheduler = DagScheduler([_step("C"), _step("A"), _step("B")])
        assert scheduler.topological_order() == ["C", "A", "B"]

    def test_execution_groups_by_depth(self):
        assert _diamond().get_execution_groups() == [["A"], ["B", "C"], ["D"]]

    def test_independent_steps_share_group_zero(self):
        scheduler = DagScheduler([_step("A"), _step("B"), _step("C", ["A"])])
        assert scheduler.get_execution_groups() == [["A", "B"], ["C"]]
        assert scheduler.group_of("C") == 1

    def test_downstream_of(self):
        assert _diamond().downstream_of("B") == ["D"]
        assert _diamond().downstream_of("A") == ["B", "C", "D"]


class TestReadiness:
    """get_ready_steps and failure propagation."""

    def test_only_roots_ready_initially(self):
        assert _diamond().get_ready_steps() == ["A"]

    def test_explicit_completed_set(self):
        assert _diamond().get_ready_steps(completed=["A"]) == ["B", "C"]
        assert _diamond().get_ready_steps(completed=["A", "B", "C"]) == ["D"]

    def test_progress_through_graph(self):
        scheduler = _diamond()
        scheduler.mark_started("A")
        assert scheduler.get_ready_steps() == []
        scheduler.mark_completed("A")
        assert scheduler.get_ready_steps() == ["B", "C"]

    def test_failure_skips_transitive_dependents(self):
        scheduler = _diamond()
        scheduler.mark_started("A")
        scheduler.mark_completed("A")
        scheduler.mark_started("B")
        skipped = scheduler.mark_failed("B")
        assert skipped == ["D"]
        assert scheduler.status("D") is StepStatus.SKIPPED
        assert scheduler.get_ready_steps() == ["C"]

    def test_interrupted_step_leaves_dependents_pending(self):
        scheduler = _diamond()
        scheduler.mark_started("A")
        scheduler.mark_interrupted("A")
        assert scheduler.status("A") is StepStatus.FAILED
        assert scheduler.get_ready_steps() == []
        assert scheduler.status("B") is StepStatus.PENDING

    def test_backward_transition_rejected(self):
        scheduler = _diamond()
        scheduler.mark_started("A")
        scheduler.mark_completed("A")
        with pytest.raises(InvalidTransitionError):
            scheduler.mark_started("A")

    def test_restore_from_snapshot_statuses(self):
        scheduler = _diamond()
        scheduler.restore({"A": StepStatus.COMPLETED, "B": StepStatus.COMPLETED})
        assert scheduler.get_ready_steps() == ["C"]

    def test_restore_propagates_old_failures(self):
        scheduler = _diamond()
        scheduler.restore({"A": StepStatus.COMPLETED, "B": StepStatus.FAILED})
        assert scheduler.get_ready_steps() == ["C"]
        assert scheduler.status("D") is StepStatus.SKIPPED

    def test_is_complete(self):
        scheduler = DagScheduler([_step("A")])
        assert not scheduler.is_complete()
        scheduler.mark_started("A")
        scheduler.mark_completed("A")
        assert scheduler.is_complete()


class TestValidate:
    """DagScheduler.validate never raises."""

    def test_valid_definition(self):
        result = DagScheduler.validate(_definition(_step("A"), _step("B", ["A"])))
        assert result.valid
        assert result.groups == [["A"], ["B"]]
        assert result.order == ["A", "B"]
        assert result.errors == []

    def test_cycle_reported(self):
        result = DagScheduler.validate(_definition(_step("A", ["B"]), _step("B", ["A"])))
        assert not result.valid
        assert result.cycle == ["A", "B", "A"]
        assert "Circular dependency" in result.errors[0]

    def test_unknown_dependency_reported(self):
        result = DagScheduler.validate(_definition(_step("A", ["missing"])))
        assert not result.valid
        assert "missing" in result.errors[0]

    def test_missing_prompt_is_error(self):
        result = DagScheduler.validate(_definition(_step("A"), _step("B", ["A"], prompt=None)))
        assert not result.valid
        assert result.errors == ["step 'B': has neither prompt nor spec"]
        assert result.groups == [["A"], ["B"]]

    def test_unreadable_spec_file_is_error(self, tmp_path):
        definition = WorkflowDefinition(
            name="wf", steps=(WorkflowStep(name="A", spec="missing.md"),),
            source_path=str(tmp_path / "wf.yml"),
        )
        result = DagScheduler.validate(definition)
        assert not result.valid
        assert "cannot read spec" in result.errors[0]

    def test_parallel_group_mismatch_is_warning(self):
        result = DagScheduler.validate(_definition(
            _step("A", parallel_group=0),
            _step("B", ["A"], parallel_group=0),
        ))
        assert result.valid
        assert any("parallel-group 0" in w for w in result.warnings)
        assert result.groups == [["A"], ["B"]]
