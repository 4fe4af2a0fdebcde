"""Per-task workspaces for parallel runs."""

import shutil
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from ..logger import get_logger
from ..models import Task

_log = get_logger(__name__)

# Never copied into an isolated workspace
_IGNORED = (".git", ".looprunner", "__pycache__", ".venv", "node_modules", ".pytest_cache")


class WorkspaceManager:
    """Hands each task a working directory.

    Shared mode returns the project root for every task. Isolated mode gives
    each task its own copy of the project under ``<workspace_root>/<task_id>``.
    The workspace root and any ``exclude`` paths are left out of the copy, so a
    state directory inside the project is never copied into itself.
    """

    def __init__(self, project_root: Union[str, Path], workspace_root: Union[str, Path],
                 isolate: bool = False, exclude: Iterable[Union[str, Path]] = ()):
        self.project_root = Path(project_root).resolve()
        self.workspace_root = Path(workspace_root)
        self.isolate = isolate
        self._excluded = [self.workspace_root.resolve()] + [Path(p).resolve() for p in exclude]
        self._acquired: Dict[str, Path] = {}
        self._lock = threading.Lock()

    def _ignore(self, directory: str, names: List[str]) -> List[str]:
        skipped = []
        for name in names:
            if name in _IGNORED:
                skipped.append(name)
                continue
            candidate = (Path(directory) / name).resolve()
            if any(candidate == p or candidate in p.parents for p in self._excluded):
                skipped.append(name)
        return skipped

    def acquire(self, task: Task) -> Path:
        if not self.isolate:
            return self.project_root
        with self._lock:
            existing = self._acquired.get(task.id)
            if existing is not None:
                return existing
            path = self.workspace_root / task.id
            self._acquired[task.id] = path

        if not path.exists():
            if self.project_root.is_dir():
                shutil.copytree(self.project_root, path, ignore=self._ignore)
            else:
                path.mkdir(parents=True, exist_ok=True)
            _log.info("Workspace for task %s at %s", task.label, path)
        return path

    def release(self, task_id: str) -> Optional[Path]:
        """Forget the task's workspace; the directory is kept for inspection."""
        with self._lock:
            return self._acquired.pop(task_id, None)

    def cleanup(self, task_ids: Iterable[str]) -> List[str]:
        """Delete the workspace directories of the given tasks.

        Returns the ids whose directory existed and was removed.
        """
        removed: List[str] = []
        for task_id in task_ids:
            with self._lock:
                self._acquired.pop(task_id, None)
            path = self.workspace_root / task_id
            if path.is_dir():
                shutil.rmtree(path)
                removed.append(task_id)
        if removed:
            _log.info("Removed %d workspace(s) under %s", len(removed), self.workspace_root)
        return removed
