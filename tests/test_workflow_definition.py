"""Tests for workflow YAML parsing and effective step settings."""

import pytest

from looprunner.errors import ConfigurationError
from looprunner.workflow.definition import (
    GlobalSettings,
    WorkflowDefinition,
    WorkflowStep,
    promise_marker,
)

FULL_STACK = """\
name: Full Stack Development
global:
  default-model: sonnet
  max-parallel-workers: 2
  budget-usd: 20.0
  completion-promise: DONE
steps:
  - name: Project Setup
    prompt: Initialize project with TypeScript
    model: haiku
    max-iterations: 10
  - name: Backend API
    prompt: Implement REST API
    depends-on: [Project Setup]
  - name: Frontend UI
    spec: specs/frontend.md
    depends_on: [Project Setup]
  - name: Integration
    prompt: Wire it together
    depends-on: [Backend API, Frontend UI]
    parallel-group: 2
    budget-usd: 5
"""


class TestParsing:
    """WorkflowDefinition.parse()."""

    def test_full_definition(self):
        wf = WorkflowDefinition.parse(FULL_STACK)
        assert wf.name == "Full Stack Development"
        assert wf.step_names == ["Project Setup", "Backend API", "Frontend UI", "Integration"]
        assert wf.global_settings.max_parallel_workers == 2
        assert wf.global_settings.budget_usd == 20.0
        assert wf.global_settings.completion_promise == "<promise>DONE</promise>"

    def test_kebab_and_snake_keys_equivalent(self):
        wf = WorkflowDefinition.parse(FULL_STACK)
        assert wf.get_step("Backend API").depends_on == ("Project Setup",)
        assert wf.get_step("Frontend UI").depends_on == ("Project Setup",)

    def test_step_overrides(self):
        wf = WorkflowDefinition.parse(FULL_STACK)
        integration = wf.get_step("Integration")
        assert integration.parallel_group == 2
        assert integration.budget_usd == 5.0
        assert wf.step_model(wf.get_step("Project Setup")) == "haiku"
        assert wf.step_model(integration) == "sonnet"
        assert wf.step_max_iterations(wf.get_step("Project Setup")) == 10
        assert wf.step_max_iterations(integration) == 50

    def test_single_dependency_string(self):
        wf = WorkflowDefinition.parse("name: w\nsteps:\n  - name: a\n    prompt: x\n"
                                      "  - name: b\n    prompt: y\n    depends-on: a\n")
        assert wf.get_step("b").depends_on == ("a",)

    @pytest.mark.parametrize("text, message", [
        ("- just a list", "mapping"),
        ("name: w\nsteps: []\n", "at least one step"),
        ("steps:\n  - name: a\n", "name is required"),
        ("name: w\nsteps:\n  - prompt: x\n", "name is required"),
        ("name: w\nsteps:\n  - name: a\n    depends-on: 3\n", "depends-on"),
        ("name: w\nsteps:\n  - name: a\n    max-iterations: 0\n", "max-iterations"),
        ("name: w\nsteps: [\n", "Invalid workflow YAML"),
    ])
    def test_malformed_definitions(self, text, message):
        with pytest.raises(ConfigurationError, match=message):
            WorkflowDefinition.parse(text)

    def test_round_trip_through_dict(self):
        wf = WorkflowDefinition.parse(FULL_STACK)
        again = WorkflowDefinition.from_dict(wf.to_dict())
        assert again.steps == wf.steps
        assert again.global_settings == wf.global_settings


class TestPrompts:
    """Inline prompts and spec files."""

    def test_spec_resolved_relative_to_workflow_file(self, tmp_dir):
        (tmp_dir / "specs").mkdir()
        (tmp_dir / "specs" / "frontend.md").write_text("Build the UI", encoding="utf-8")
        path = tmp_dir / "workflow.yml"
        path.write_text(FULL_STACK, encoding="utf-8")

        wf = WorkflowDefinition.load(path)
        assert wf.step_prompt(wf.get_step("Frontend UI")) == "Build the UI"
        assert wf.step_prompt(wf.get_step("Backend API")) == "Implement REST API"

    def test_missing_spec_file(self, tmp_dir):
        wf = WorkflowDefinition(
            name="w", steps=(WorkflowStep(name="a", spec="nope.md"),),
            source_path=str(tmp_dir / "w.yml"),
        )
        with pytest.raises(ConfigurationError, match="cannot read spec"):
            wf.step_prompt(wf.steps[0])

    def test_no_prompt_or_spec(self):
        wf = WorkflowDefinition(name="w", steps=(WorkflowStep(name="a"),))
        with pytest.raises(ConfigurationError, match="neither prompt nor spec"):
            wf.step_prompt(wf.steps[0])

    def test_load_missing_file(self, tmp_dir):
        with pytest.raises(ConfigurationError, match="Cannot read workflow file"):
            WorkflowDefinition.load(tmp_dir / "absent.yml")


class TestGlobalSettings:
    """Workflow-wide defaults."""

    def test_defaults(self):
        settings = GlobalSettings.from_dict(None)
        assert settings.default_model == "sonnet"
        assert settings.max_parallel_workers == 4
        assert settings.completion_promise == "<promise>COMPLETE</promise>"
        assert settings.max_iterations == 50
        assert settings.fail_fast is False

    def test_promise_marker(self):
        assert promise_marker("COMPLETE") == "<promise>COMPLETE</promise>"
        assert promise_marker("<done/>") == "<done/>"

    def test_invalid_worker_count(self):
        with pytest.raises(ConfigurationError, match="max-parallel-workers"):
            GlobalSettings.from_dict({"max-parallel-workers": 0})
