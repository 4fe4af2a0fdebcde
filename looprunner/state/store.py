"""State store: one JSON document per task id and per workflow id.

Layout under the state directory::

    tasks/<id>.json               active (non-terminal) tasks
    workflows/<id>.json           active workflows
    history/tasks/<id>.json       tasks archived on reaching a terminal status
    history/workflows/<id>.json   archived workflows

Every write goes to a temporary file in the target directory and is renamed
into place, so readers never observe a partially written document.
"""

import json
import os
import tempfile
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ..errors import AmbiguousResumeIdError, NotFoundError, SnapshotCorruptionError
from ..logger import get_logger
from ..models import utc_now
from .snapshots import TASK_KIND, WORKFLOW_KIND, TaskSnapshot, WorkflowSnapshot

_log = get_logger(__name__)

Snapshot = Union[TaskSnapshot, WorkflowSnapshot]

_KIND_DIRS = {TASK_KIND: "tasks", WORKFLOW_KIND: "workflows"}


def atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write ``data`` to ``path`` via temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise SnapshotCorruptionError(path, "file is missing")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SnapshotCorruptionError(path, f"invalid JSON: {e}")
    except OSError as e:
        raise SnapshotCorruptionError(path, str(e))
    if not isinstance(data, dict):
        raise SnapshotCorruptionError(path, "top level is not an object")
    return data


class StateStore:
    """Persist and restore task/workflow snapshots."""

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir).expanduser()
        self._lock = threading.RLock()
        for kind_dir in _KIND_DIRS.values():
            (self.base_dir / kind_dir).mkdir(parents=True, exist_ok=True)
            (self.base_dir / "history" / kind_dir).mkdir(parents=True, exist_ok=True)

    # ── Paths ─────────────────────────────────────────────────

    def _active_path(self, kind: str, entity_id: str) -> Path:
        return self.base_dir / _KIND_DIRS[kind] / f"{entity_id}.json"

    def _history_path(self, kind: str, entity_id: str) -> Path:
        return self.base_dir / "history" / _KIND_DIRS[kind] / f"{entity_id}.json"

    def _dirs(self, kind: str) -> List[Path]:
        return [self.base_dir / _KIND_DIRS[kind], self.base_dir / "history" / _KIND_DIRS[kind]]

    # ── Writes ────────────────────────────────────────────────

    def save(self, snapshot: Snapshot) -> Path:
        """Write a snapshot; terminal snapshots are archived to history."""
        kind = snapshot.kind
        snapshot.touch()
        data = snapshot.to_dict()
        with self._lock:
            active = self._active_path(kind, snapshot.id)
            history = self._history_path(kind, snapshot.id)
            if snapshot.is_terminal:
                atomic_write_json(history, data)
                stale = active
                target = history
            else:
                atomic_write_json(active, data)
                stale = history
                target = active
            if stale.exists():
                stale.unlink()
        _log.debug("Saved %s %s (%s) to %s", kind, snapshot.short_id, snapshot.status.value, target)
        return target

    def save_task(self, snapshot: TaskSnapshot) -> Path:
        return self.save(snapshot)

    def save_workflow(self, snapshot: WorkflowSnapshot) -> Path:
        return self.save(snapshot)

    def delete(self, kind: str, entity_id: str) -> bool:
        removed = False
        with self._lock:
            for path in (self._active_path(kind, entity_id), self._history_path(kind, entity_id)):
                if path.exists():
                    path.unlink()
                    removed = True
        return removed

    # ── Reads ─────────────────────────────────────────────────

    def _find_path(self, kind: str, entity_id: str) -> Optional[Path]:
        for path in (self._active_path(kind, entity_id), self._history_path(kind, entity_id)):
            if path.exists():
                return path
        return None

    def _load_path(self, kind: str, path: Path) -> Snapshot:
        data = read_json(path)
        try:
            if kind == TASK_KIND:
                return TaskSnapshot.from_dict(data)
            return WorkflowSnapshot.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            raise SnapshotCorruptionError(path, f"invalid {kind} document: {e}")

    def load_task(self, task_id: str) -> TaskSnapshot:
        path = self._find_path(TASK_KIND, task_id)
        if path is None:
            raise NotFoundError(task_id)
        return self._load_path(TASK_KIND, path)

    def load_workflow(self, workflow_id: str) -> WorkflowSnapshot:
        path = self._find_path(WORKFLOW_KIND, workflow_id)
        if path is None:
            raise NotFoundError(workflow_id)
        return self._load_path(WORKFLOW_KIND, path)

    def _ids(self, kind: str) -> List[str]:
        ids = set()
        for directory in self._dirs(kind):
            if directory.exists():
                ids.update(p.stem for p in directory.glob("*.json"))
        return sorted(ids)

    def resolve(self, identifier: str) -> Tuple[str, str]:
        """Resolve an exact id or unambiguous prefix to ``(kind, id)``."""
        identifier = identifier.strip()
        if not identifier:
            raise NotFoundError(identifier)
        candidates = [(kind, eid) for kind in _KIND_DIRS for eid in self._ids(kind)]

        exact = [c for c in candidates if c[1] == identifier]
        if len(exact) == 1:
            return exact[0]

        matches = [c for c in candidates if c[1].startswith(identifier)]
        if not matches:
            raise NotFoundError(identifier)
        if len(matches) > 1:
            raise AmbiguousResumeIdError(identifier, [f"{k}:{eid}" for k, eid in matches])
        return matches[0]

    def load(self, identifier: str) -> Snapshot:
        kind, entity_id = self.resolve(identifier)
        if kind == TASK_KIND:
            return self.load_task(entity_id)
        return self.load_workflow(entity_id)

    def _iter_snapshots(self, kind: str, include_history: bool = True):
        dirs = self._dirs(kind) if include_history else self._dirs(kind)[:1]
        for directory in dirs:
            if not directory.exists():
                continue
            for path in directory.glob("*.json"):
                try:
                    yield self._load_path(kind, path)
                except SnapshotCorruptionError as e:
                    _log.warning("Skipping unreadable snapshot: %s", e)
                    continue

    def list_tasks(self, include_history: bool = True, include_steps: bool = False) -> List[TaskSnapshot]:
        tasks = [
            t for t in self._iter_snapshots(TASK_KIND, include_history)
            if include_steps or not t.workflow_id
        ]
        tasks.sort(key=lambda t: t.updated_at, reverse=True)
        return tasks

    def list_workflows(self, include_history: bool = True) -> List[WorkflowSnapshot]:
        workflows = list(self._iter_snapshots(WORKFLOW_KIND, include_history))
        workflows.sort(key=lambda w: w.updated_at, reverse=True)
        return workflows

    def list_resumable(self) -> List[Snapshot]:
        """Top-level tasks and workflows that can be resumed, newest first."""
        entries: List[Snapshot] = [t for t in self.list_tasks() if t.can_resume]
        entries += [w for w in self.list_workflows() if w.can_resume]
        entries.sort(key=lambda s: s.updated_at, reverse=True)
        return entries

    def list_history(self, limit: int = 10) -> List[Snapshot]:
        entries: List[Snapshot] = [
            t for t in self._iter_snapshots(TASK_KIND) if t.is_terminal and not t.workflow_id
        ]
        entries += [w for w in self._iter_snapshots(WORKFLOW_KIND) if w.is_terminal]
        entries.sort(key=lambda s: s.updated_at, reverse=True)
        return entries[:limit]

    # ── Cleanup ───────────────────────────────────────────────

    def purge(self, retention_days: int, now=None) -> List[str]:
        """Delete terminal snapshots last updated before the retention window.

        Non-terminal snapshots are never purged. Returns the deleted ids.
        """
        cutoff = (now or utc_now()) - timedelta(days=retention_days)
        purged: List[str] = []
        with self._lock:
            for kind in _KIND_DIRS:
                for snapshot in list(self._iter_snapshots(kind)):
                    if snapshot.is_terminal and snapshot.updated_at < cutoff:
                        if self.delete(kind, snapshot.id):
                            purged.append(snapshot.id)
        if purged:
            _log.info("Purged %d snapshot(s) older than %d day(s)", len(purged), retention_days)
        return purged
