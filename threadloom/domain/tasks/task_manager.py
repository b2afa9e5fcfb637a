from typing import Dict, Any, List, Optional, Callable, Awaitable, Set, Union, Iterable
from dataclasses import dataclass
import asyncio
import inspect
import json
import uuid

import structlog

from threadloom.domain.models.agent_state import utcnow
from threadloom.domain.models.background_task import (
    BackgroundTask, TaskStatus, StatusFilter, normalize_status_filter
)
from threadloom.infrastructure.observability.logging import agent_logger
from .task_store import TaskStore

logger = structlog.get_logger(__name__)


@dataclass
class TaskResources:
    """Handles the execution backend attached to a task"""
    handle: Optional[asyncio.Task] = None
    on_kill: Optional[Callable[[], Union[None, Awaitable[None]]]] = None


@dataclass
class KillResult:
    killed: bool
    reason: Optional[str] = None


class BackgroundTaskManager:
    """In-memory registry of background tasks; the source of truth while the process lives.

    Every mutation below is synchronous, so it runs to completion between
    suspension points of the event loop. Each registration and transition is
    written through to the optional TaskStore in the order it happened; saves
    run on the event loop and flush() waits for them. Changes made outside a
    running loop, or whose save failed, stay dirty until the next flush().
    """

    def __init__(self, store: Optional[TaskStore] = None):
        self.store = store
        self.tasks: Dict[str, BackgroundTask] = {}
        self.resources: Dict[str, TaskResources] = {}
        self._waiters: List["asyncio.Future[BackgroundTask]"] = []
        self._dirty: List[str] = []
        self._saves: Set[asyncio.Task] = set()
        self._last_save: Optional[asyncio.Task] = None
        self._accepting = True

    # Lifecycle

    def register_task(
        self,
        task: BackgroundTask,
        resources: Optional[TaskResources] = None
    ) -> BackgroundTask:
        """Start tracking a task"""

        if not self._accepting:
            raise RuntimeError("Task manager is not accepting new tasks")

        self.tasks[task.id] = task
        self.resources[task.id] = resources or TaskResources()
        self._persist(task)

        agent_logger.log_task_transition(task.id, None, task.status.value, subagent_type=task.subagent_type)
        return task

    def update_task(self, task_id: str, **changes: Any) -> Optional[BackgroundTask]:
        """Apply changes to a task; illegal status transitions are ignored"""

        existing = self.tasks.get(task_id)
        if not existing:
            logger.warning("Update for unknown task", task_id=task_id)
            return None

        new_status = TaskStatus(changes["status"]) if "status" in changes else existing.status
        transitioned = new_status != existing.status

        if transitioned and not existing.can_transition_to(new_status):
            logger.warning(
                "Ignoring illegal task transition",
                task_id=task_id,
                from_status=existing.status.value,
                to_status=new_status.value
            )
            return None

        if transitioned and new_status.is_terminal:
            changes.setdefault("completed_at", utcnow())
        else:
            # completed_at is stamped once, on the terminal transition
            changes.pop("completed_at", None)

        updated = existing.updated(**changes)
        self.tasks[task_id] = updated
        self._persist(updated)

        if transitioned:
            agent_logger.log_task_transition(task_id, existing.status.value, new_status.value)
            if new_status.is_terminal:
                self._emit_terminal(updated)

        return updated

    def _emit_terminal(self, task: BackgroundTask) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(task)

    def _mark_dirty(self, task_id: str) -> None:
        if task_id not in self._dirty:
            self._dirty.append(task_id)

    # Queries

    def get_task(self, task_id: str) -> Optional[BackgroundTask]:
        return self.tasks.get(task_id)

    def remove_task(self, task_id: str) -> bool:
        """Forget a terminal task; active tasks are never removed"""

        task = self.tasks.get(task_id)
        if not task or task.status.is_active:
            return False

        del self.tasks[task_id]
        self.resources.pop(task_id, None)
        return True

    def list_tasks(
        self,
        status: StatusFilter = None,
        subagent_type: Optional[str] = None
    ) -> List[BackgroundTask]:
        statuses = normalize_status_filter(status)
        return [
            task for task in self.tasks.values()
            if (statuses is None or task.status in statuses)
            and (subagent_type is None or task.subagent_type == subagent_type)
        ]

    def has_active_tasks(self) -> bool:
        return any(task.status.is_active for task in self.tasks.values())

    def wait_for_next_completion(self) -> "asyncio.Future[BackgroundTask]":
        """Future resolved by the first terminal transition after this call.

        Must be called from inside a running event loop. Tasks that finished
        before the call are not observed.
        """

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        return waiter

    # Control

    async def kill_task(self, task_id: str) -> KillResult:
        task = self.tasks.get(task_id)
        if not task:
            return KillResult(killed=False, reason="Task not found")

        if task.status.is_terminal:
            return KillResult(killed=False, reason="Task already finished")

        # Status first, so a dying backend reporting failure cannot overwrite it
        self.update_task(task_id, status=TaskStatus.KILLED)

        resources = self.resources.get(task_id) or TaskResources()
        try:
            if resources.handle is not None and not resources.handle.done():
                resources.handle.cancel()
            if resources.on_kill is not None:
                outcome = resources.on_kill()
                if inspect.isawaitable(outcome):
                    await outcome
        except Exception as e:
            logger.error("Error releasing task resources", task_id=task_id, error=str(e))
            return KillResult(killed=True, reason=str(e))

        return KillResult(killed=True)

    async def kill_all_tasks(self) -> Dict[str, int]:
        killed = failed = 0
        for task in self.list_tasks(status=[TaskStatus.PENDING, TaskStatus.RUNNING]):
            result = await self.kill_task(task.id)
            if result.killed:
                killed += 1
            else:
                failed += 1
        return {"killed": killed, "failed": failed}

    def stop_accepting(self) -> None:
        self._accepting = False

    def resume_accepting(self) -> None:
        self._accepting = True

    def is_accepting(self) -> bool:
        return self._accepting

    # Durability

    def _persist(self, task: BackgroundTask) -> None:
        """Queue a save of this exact record behind every earlier save"""

        self._mark_dirty(task.id)
        if self.store is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        previous = self._last_save
        if previous is not None and (previous.done() or previous.get_loop() is not loop):
            previous = None

        save = loop.create_task(self._write_through(task, previous))
        self._last_save = save
        self._saves.add(save)
        save.add_done_callback(self._saves.discard)

    async def _write_through(self, task: BackgroundTask, previous: Optional[asyncio.Task]) -> None:
        if previous is not None:
            await asyncio.wait([previous])

        try:
            await self.store.save(task)
        except Exception as e:
            logger.error("Failed to persist task", task_id=task.id, status=task.status.value, error=str(e))
            return

        # A newer record for the same task keeps it dirty until its own save lands
        if self.tasks.get(task.id) is task and task.id in self._dirty:
            self._dirty.remove(task.id)

    async def flush(self) -> int:
        """Wait for queued saves, then write whatever is still unsaved; returns the number written here"""

        if self._saves:
            await asyncio.gather(*list(self._saves), return_exceptions=True)

        if self.store is None:
            self._dirty.clear()
            return 0

        pending, self._dirty = self._dirty, []
        written = 0
        for task_id in pending:
            task = self.tasks.get(task_id)
            if task is not None:
                await self.store.save(task)
                written += 1
        return written

    def restore(
        self,
        tasks: Iterable[BackgroundTask],
        mark_running_as_failed: bool = True,
        failure_reason: str = "Process terminated while task was running"
    ) -> int:
        """Re-hydrate the registry from persisted records; returns the count restored"""

        count = 0
        for task in tasks:
            if mark_running_as_failed and task.status.is_active:
                task = task.updated(
                    status=TaskStatus.FAILED,
                    error=failure_reason,
                    completed_at=utcnow()
                )
                self.tasks[task.id] = task
                self._persist(task)
            else:
                self.tasks[task.id] = task
            self.resources.setdefault(task.id, TaskResources())
            count += 1
        return count

    def clear(self) -> None:
        self.tasks.clear()
        self.resources.clear()
        self._dirty.clear()


def _stringify_result(result: Any) -> Optional[str]:
    if result is None or isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def run_in_background(
    manager: BackgroundTaskManager,
    work: Awaitable[Any],
    subagent_type: str,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
    task_id: Optional[str] = None
) -> BackgroundTask:
    """Run an awaitable as a tracked background task.

    Must be called from inside a running event loop. The task moves to running
    when the work starts, then to completed/failed; cancellation leaves it killed.
    """

    task = BackgroundTask.create(
        id=task_id or f"bg_{uuid.uuid4().hex[:12]}",
        subagent_type=subagent_type,
        description=description,
        metadata=metadata
    )

    try:
        manager.register_task(task)
    except RuntimeError:
        if inspect.iscoroutine(work):
            work.close()
        raise

    async def runner() -> None:
        manager.update_task(task.id, status=TaskStatus.RUNNING)
        try:
            result = await work
        except asyncio.CancelledError:
            manager.update_task(task.id, status=TaskStatus.KILLED)
            raise
        except Exception as e:
            logger.info("Background task failed", task_id=task.id, error=str(e))
            manager.update_task(task.id, status=TaskStatus.FAILED, error=str(e))
        else:
            manager.update_task(task.id, status=TaskStatus.COMPLETED, result=_stringify_result(result))

    manager.resources[task.id].handle = asyncio.get_running_loop().create_task(runner())
    return task
