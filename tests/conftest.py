"""Shared fixtures for looprunner tests."""

import os

import pytest

from looprunner import config as config_module
from looprunner.config import Config
from looprunner.engine.context import OrchestratorContext
from looprunner.pricing import PriceTable
from looprunner.state.store import StateStore

from fakes import ScriptedExecutor

_ENV_VARS = [
    "LOOPRUNNER_MODEL", "LOOPRUNNER_MAX_ITERATIONS", "LOOPRUNNER_BUDGET",
    "LOOPRUNNER_STATE_DIR", "LOOPRUNNER_EXECUTOR", "LOOPRUNNER_VERBOSE", "LOOPRUNNER_WORKERS",
]


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep the user's ~/.looprunner and LOOPRUNNER_* variables out of every test."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setattr(config_module, "CONFIG_DIR", home / ".looprunner")
    monkeypatch.setattr(config_module, "CONFIG_FILE", home / ".looprunner" / "config.yml")
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary project directory and cd into it."""
    project = tmp_path / "project"
    project.mkdir()
    orig = os.getcwd()
    os.chdir(project)
    yield project
    os.chdir(orig)


@pytest.fixture
def config(tmp_dir):
    """Defaults with state kept under the temporary project."""
    cfg = Config.from_dict({})
    cfg.project_root = str(tmp_dir)
    cfg.state_dir = str(tmp_dir / ".looprunner")
    return cfg


@pytest.fixture
def store(config):
    return StateStore(config.state_path)


@pytest.fixture
def context(config, store):
    return OrchestratorContext.create(config, prices=PriceTable.default(), store=store)


@pytest.fixture
def executor():
    """A scripted executor that never completes; tests replace its script."""
    return ScriptedExecutor()
