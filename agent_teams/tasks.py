from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from agent_teams import locks
from agent_teams.errors import ConflictError, NotFoundError, PermissionDeniedError, TeamsError, ValidationError
from agent_teams.events import EventBus, make_event
from agent_teams.models import Task, TeamConfig
from agent_teams.paths import StoragePaths
from agent_teams.permissions import RolePolicy
from agent_teams.store import list_documents, new_id, read_document, remove_document, utc_now, validate, write_document

logger = logging.getLogger(__name__)

STATUS_ORDER = {"pending": 0, "in_progress": 1, "completed": 2}
VALID_TRANSITIONS = {
    "pending": {"in_progress"},
    "in_progress": {"completed"},
    "completed": set(),
}
PRIORITY_RANK = {"high": 0, "normal": 1, "low": 2}
SOFT_BLOCK_MARKER = "dependencies are not met"
ASSIGNING_ROLES = {"leader", "task-manager"}

Edge = Tuple[str, str]


def would_close_cycle(graph: Dict[str, List[str]], task_id: str, depends_on: str) -> bool:
    """True when ``task_id`` is reachable from ``depends_on`` along dependency edges."""
    if task_id == depends_on:
        return True
    queue = deque([depends_on])
    seen = set()
    while queue:
        current = queue.popleft()
        if current == task_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        queue.extend(dep for dep in graph.get(current, ()) if dep not in seen)
    return False


@dataclass
class TaskGraph:
    """Per-team task documents linked by dependency edges.

    Every mutation holds the team's task-set lock for its whole read-check-write
    cycle, so blocks sync and completion cascade are never interleaved with
    another writer in the same team. Events go out after the lock is dropped.
    """

    paths: StoragePaths
    bus: EventBus
    clock: Callable[[], datetime] = utc_now
    id_factory: Callable[[str], str] = new_id

    def create(
        self,
        team: str,
        title: str = "Untitled Task",
        description: Optional[str] = None,
        priority: str = "normal",
        dependencies: Sequence[str] = (),
    ) -> Task:
        self._require_team(team)
        deps = _dedupe(dependencies)
        with locks.file_lock(self.paths.task_lock(team)):
            tasks = self._scan(team)
            missing = [dep for dep in deps if dep not in tasks]
            if missing:
                raise NotFoundError(f"Dependency task(s) not found in team {team}: {', '.join(missing)}")
            task_id = self.id_factory("TASK")
            graph = _graph(tasks)
            self._check_edges(graph, [(task_id, dep) for dep in deps])
            task = validate(
                f"task {task_id}",
                {
                    "id": task_id,
                    "title": title or "Untitled Task",
                    "description": description,
                    "priority": priority,
                    "status": "pending",
                    "created_at": self.clock(),
                    "dependencies": deps,
                    "blocks": [],
                },
                Task,
            )
            self._save(team, task)
            for dep in deps:
                upstream = tasks[dep]
                if task_id not in upstream.blocks:
                    self._save(team, upstream.model_copy(update={"blocks": upstream.blocks + [task_id]}))
        self._publish("task.created", team, {"task_id": task.id, "title": task.title, "priority": task.priority})
        return task

    def get(self, team: str, task_id: str) -> Task:
        path = self.paths.task(team, task_id)
        if not path.exists():
            raise NotFoundError(f"Task {task_id} not found in team {team}")
        with locks.file_lock(self.paths.task_lock(team), exclusive=False):
            return read_document(path, Task)

    def list(self, team: str, status: Optional[str] = None, owner: Optional[str] = None) -> List[Task]:
        if not self.paths.team_tasks_dir(team).is_dir():
            return []
        with locks.file_lock(self.paths.task_lock(team), exclusive=False):
            tasks = list(self._scan(team).values())
        if status:
            tasks = [task for task in tasks if task.status == status]
        if owner:
            tasks = [task for task in tasks if task.owner == owner]
        return tasks

    def dependencies_met(self, team: str, task_id: str) -> bool:
        return not self.unmet_dependencies(team, self.get(team, task_id))

    def unmet_dependencies(self, team: str, task: Task) -> List[str]:
        if not task.dependencies:
            return []
        with locks.file_lock(self.paths.task_lock(team), exclusive=False):
            return _unmet(task, self._scan(team))

    def update(
        self,
        team: str,
        task_id: str,
        *,
        status: Optional[str] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        priority: Optional[str] = None,
        owner: Optional[str] = None,
        dependencies: Optional[Sequence[str]] = None,
    ) -> Task:
        """Apply a patch; every check runs before anything is written."""
        with locks.file_lock(self.paths.task_lock(team)):
            tasks = self._scan(team)
            task = tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found in team {team}")

            if status is not None and status not in STATUS_ORDER:
                raise ValidationError(f"task {task_id}", [f"status: unknown status {status!r}"])
            if status is not None and status != task.status and status not in VALID_TRANSITIONS[task.status]:
                raise ConflictError(f"Invalid status transition: {task.status} -> {status}")

            new_deps = task.dependencies if dependencies is None else _dedupe(dependencies)
            if dependencies is not None:
                missing = [dep for dep in new_deps if dep not in tasks]
                if missing:
                    raise NotFoundError(f"Dependency task(s) not found in team {team}: {', '.join(missing)}")
                graph = _graph(tasks)
                graph[task_id] = []
                self._check_edges(graph, [(task_id, dep) for dep in new_deps])

            entering = status is not None and status != task.status
            if entering:
                unmet = [dep for dep in new_deps if dep not in tasks or tasks[dep].status != "completed"]
                if unmet:
                    raise ConflictError(
                        f"Task {task_id} cannot move to {status}: unmet dependencies {', '.join(unmet)}"
                    )

            now = self.clock()
            changes: Dict[str, object] = {"updated_at": now, "dependencies": new_deps}
            for key, value in (("title", title), ("description", description), ("priority", priority), ("owner", owner)):
                if value is not None:
                    changes[key] = value
            if entering:
                changes["status"] = status
                if status == "completed":
                    changes["completed_at"] = now
            updated = self._save(team, task.model_copy(update=changes))
            tasks[task_id] = updated

            if dependencies is not None:
                self._sync_blocks(team, tasks, task_id, task.dependencies, new_deps)

            completed_now = entering and status == "completed"
            unblocked: List[Task] = []
            if completed_now:
                unblocked = self._cascade_completion(team, tasks, task_id)

        if completed_now:
            self._publish("task.completed", team, {"task_id": updated.id, "title": updated.title})
            for dependent in unblocked:
                self._publish("task.unblocked", team, {"task_id": dependent.id, "title": dependent.title})
        return updated

    def add_dependencies(self, team: str, edges: Iterable[Edge]) -> List[Task]:
        """Add several ``(task, depends_on)`` edges as one validated batch."""
        batch = [(str(task_id), str(dep)) for task_id, dep in edges]
        with locks.file_lock(self.paths.task_lock(team)):
            tasks = self._scan(team)
            for task_id, dep in batch:
                for ref in (task_id, dep):
                    if ref not in tasks:
                        raise NotFoundError(f"Task {ref} not found in team {team}")
            self._check_edges(_graph(tasks), batch)

            now = self.clock()
            touched: Dict[str, Task] = {}
            for task_id, dep in batch:
                task = touched.get(task_id, tasks[task_id])
                if dep not in task.dependencies:
                    task = task.model_copy(update={"dependencies": task.dependencies + [dep], "updated_at": now})
                    touched[task_id] = task
                upstream = touched.get(dep, tasks[dep])
                if task_id not in upstream.blocks:
                    touched[dep] = upstream.model_copy(update={"blocks": upstream.blocks + [task_id]})
            return [self._save(team, task) for task in touched.values()]

    def claim(
        self,
        team: str,
        task_id: str,
        agent: str,
        allow_soft_block: bool = False,
        assigned_by: Optional[str] = None,
    ) -> Task:
        """Move a pending task to in_progress owned by ``agent``.

        In a hierarchical team the acting agent (``assigned_by`` or the claimer)
        must be the leader or hold a leader/task-manager role.
        """
        self._check_hierarchy(team, assigned_by or agent)
        with locks.file_lock(self.paths.task_lock(team)):
            tasks = self._scan(team)
            task = tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found in team {team}")
            if task.status != "pending":
                raise ConflictError(f"Task {task_id} is not available (status: {task.status})")

            now = self.clock()
            changes: Dict[str, object] = {"status": "in_progress", "owner": agent, "claimed_at": now, "updated_at": now}
            unmet = _unmet(task, tasks)
            if unmet:
                if not allow_soft_block:
                    raise ConflictError(f"Task {task_id} is blocked by unmet dependencies: {', '.join(unmet)}")
                changes["warning"] = (
                    f"Warning: Task {task_id} {SOFT_BLOCK_MARKER} ({', '.join(unmet)}). Proceed with caution."
                )
            claimed = self._save(team, task.model_copy(update=changes))
        self._publish("task.claimed", team, {"task_id": claimed.id, "owner": agent, "title": claimed.title})
        return claimed

    def delete(self, team: str, task_id: str) -> None:
        with locks.file_lock(self.paths.task_lock(team)):
            tasks = self._scan(team)
            task = tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found in team {team}")
            for other in tasks.values():
                if other.id != task_id and task_id in other.dependencies:
                    raise ConflictError(f"Cannot delete task {task_id} because task {other.id} depends on it")
            for dep in task.dependencies:
                upstream = tasks.get(dep)
                if upstream is not None and task_id in upstream.blocks:
                    self._save(team, upstream.model_copy(update={"blocks": [b for b in upstream.blocks if b != task_id]}))
            remove_document(self.paths.task(team, task_id))

    def reassign_agent_tasks(self, team: str, agent: str) -> List[str]:
        """Return ``agent``'s in-progress tasks to the pending pool."""
        if not self.paths.team_tasks_dir(team).is_dir():
            return []
        reassigned: List[str] = []
        with locks.file_lock(self.paths.task_lock(team)):
            now = self.clock()
            for task in self._scan(team).values():
                if task.status != "in_progress" or task.owner != agent:
                    continue
                self._save(
                    team,
                    task.model_copy(
                        update={
                            "status": "pending",
                            "owner": None,
                            "claimed_at": None,
                            "updated_at": now,
                            "warning": f"Reassigned: previous owner {agent} terminated",
                        }
                    ),
                )
                reassigned.append(task.id)
        if reassigned:
            logger.info("Reassigned %d task(s) from %s in team %s", len(reassigned), agent, team)
        return reassigned

    def unblocked_pending(self, team: str) -> List[Task]:
        """Pending tasks with every dependency completed, best candidate first."""
        if not self.paths.team_tasks_dir(team).is_dir():
            return []
        with locks.file_lock(self.paths.task_lock(team), exclusive=False):
            tasks = self._scan(team)
        ready = [task for task in tasks.values() if task.status == "pending" and not _unmet(task, tasks)]
        ready.sort(key=lambda task: (PRIORITY_RANK.get(task.priority, 1), task.created_at))
        return ready

    def count_unblocked_pending(self, team: str) -> int:
        return len(self.unblocked_pending(team))

    def _require_team(self, team: str) -> None:
        if not self.paths.team_config(team).exists():
            raise NotFoundError(f'Team "{team}" does not exist')

    def _check_hierarchy(self, team: str, actor: str) -> None:
        config_path = self.paths.team_config(team)
        if not config_path.exists():
            return
        try:
            config = read_document(config_path, TeamConfig)
        except TeamsError:
            logger.warning("Could not read team config for %s; skipping topology check", team)
            return
        if config.topology != "hierarchical" or actor == config.leader:
            return
        if RolePolicy(self.paths).role_of(actor) in ASSIGNING_ROLES:
            return
        raise PermissionDeniedError(
            "Hierarchical topology: only leader or task-manager can assign tasks. "
            "Request task assignment via message to the leader."
        )

    def _check_edges(self, graph: Dict[str, List[str]], edges: Sequence[Edge]) -> None:
        # Accepted edges join the graph so later edges in the batch see them.
        for task_id, dep in edges:
            if would_close_cycle(graph, task_id, dep):
                raise ConflictError(f"Circular dependency detected: {task_id} -> {dep}")
            graph.setdefault(task_id, []).append(dep)

    def _sync_blocks(
        self,
        team: str,
        tasks: Dict[str, Task],
        task_id: str,
        old_deps: Sequence[str],
        new_deps: Sequence[str],
    ) -> None:
        for dep in set(old_deps) - set(new_deps):
            upstream = tasks.get(dep)
            if upstream is not None and task_id in upstream.blocks:
                tasks[dep] = self._save(
                    team, upstream.model_copy(update={"blocks": [b for b in upstream.blocks if b != task_id]})
                )
        for dep in new_deps:
            upstream = tasks.get(dep)
            if upstream is not None and task_id not in upstream.blocks:
                tasks[dep] = self._save(team, upstream.model_copy(update={"blocks": upstream.blocks + [task_id]}))

    def _cascade_completion(self, team: str, tasks: Dict[str, Task], task_id: str) -> List[Task]:
        """Drop ``task_id`` from every other task's edges; return newly unblocked dependents."""
        unblocked: List[Task] = []
        for other in list(tasks.values()):
            if other.id == task_id:
                continue
            if task_id in other.dependencies and other.status == "pending":
                remaining = [dep for dep in other.dependencies if dep != task_id]
                if all(dep in tasks and tasks[dep].status == "completed" for dep in remaining):
                    unblocked.append(other)
            changes: Dict[str, object] = {}
            if task_id in other.dependencies:
                changes["dependencies"] = [dep for dep in other.dependencies if dep != task_id]
                if not changes["dependencies"] and other.warning and SOFT_BLOCK_MARKER in other.warning:
                    changes["warning"] = None
            if task_id in other.blocks:
                changes["blocks"] = [b for b in other.blocks if b != task_id]
            if changes:
                tasks[other.id] = self._save(team, other.model_copy(update=changes))
        return unblocked

    def _scan(self, team: str) -> Dict[str, Task]:
        # Caller holds the task-set lock.
        tasks: Dict[str, Task] = {}
        directory = self.paths.team_tasks_dir(team)
        for name in list_documents(directory):
            try:
                task = read_document(directory / name, Task)
            except TeamsError as exc:
                logger.warning("Could not read task %s in team %s: %s", name, team, exc)
                continue
            tasks[task.id] = task
        return tasks

    def _save(self, team: str, task: Task) -> Task:
        return write_document(self.paths.task(team, task.id), task, Task)

    def _publish(self, event_type: str, team: str, payload: Dict[str, object]) -> None:
        self.bus.publish(
            make_event(event_type, team, payload, timestamp=self.clock(), event_id=self.id_factory("EVT"))
        )


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def _graph(tasks: Dict[str, Task]) -> Dict[str, List[str]]:
    return {task_id: list(task.dependencies) for task_id, task in tasks.items()}


def _unmet(task: Task, tasks: Dict[str, Task]) -> List[str]:
    return [dep for dep in task.dependencies if dep not in tasks or tasks[dep].status != "completed"]
