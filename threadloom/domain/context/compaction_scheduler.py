from typing import Dict, List, Optional, Callable, TYPE_CHECKING
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio
import itertools

import structlog

from threadloom.domain.models.agent_state import utcnow
from threadloom.domain.models.messages import Message
from threadloom.domain.models.compaction import CompactionResult, CompactionSchedulerConfig, CompactionTrigger
from threadloom.domain.orchestration.model import ModelInvoker

if TYPE_CHECKING:
    from .context_manager import ContextManager

logger = structlog.get_logger(__name__)


class CompactionTaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CompactionTask:
    id: str
    messages: List[Message]
    trigger: CompactionTrigger
    model: ModelInvoker
    thread_id: Optional[str] = None
    status: CompactionTaskStatus = CompactionTaskStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[CompactionResult] = None
    error: Optional[BaseException] = None


class CompactionScheduler:
    """Runs compaction off the request path, debounced, one task at a time"""

    def __init__(
        self,
        context_manager: "ContextManager",
        config: Optional[CompactionSchedulerConfig] = None,
        on_task_complete: Optional[Callable[[CompactionTask], None]] = None,
        on_task_error: Optional[Callable[[CompactionTask], None]] = None
    ):
        self.context_manager = context_manager
        self.config = config or CompactionSchedulerConfig()
        self.on_task_complete = on_task_complete
        self.on_task_error = on_task_error
        self.tasks: Dict[str, CompactionTask] = {}
        self._ids = itertools.count(1)
        self._timer: Optional[asyncio.TimerHandle] = None
        self._runner: Optional[asyncio.Task] = None
        self._shutdown = False

    def schedule(
        self,
        messages: List[Message],
        model: ModelInvoker,
        trigger: CompactionTrigger,
        thread_id: Optional[str] = None
    ) -> str:
        """Queue a compaction of a snapshot of `messages` belonging to `thread_id`; returns the task id"""

        if self._shutdown:
            raise RuntimeError("Scheduler has been shut down")

        pending = self.get_pending_tasks()
        if len(pending) >= self.config.max_pending_tasks:
            dropped = pending[0]
            del self.tasks[dropped.id]
            logger.debug("Dropped oldest pending compaction", task_id=dropped.id)

        task = CompactionTask(
            id=f"compaction-{next(self._ids)}",
            messages=list(messages),
            trigger=CompactionTrigger(trigger),
            model=model,
            thread_id=thread_id
        )
        self.tasks[task.id] = task
        self._arm_timer()
        return task.id

    def _arm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.config.debounce_delay, self._start_next)

    def _start_next(self) -> None:
        self._timer = None
        if self._shutdown or (self._runner is not None and not self._runner.done()):
            return
        self._runner = asyncio.get_running_loop().create_task(self._execute_next())

    async def _execute_next(self) -> None:
        pending = self.get_pending_tasks()
        if self._shutdown or not pending:
            return

        task = pending[0]
        task.status = CompactionTaskStatus.RUNNING
        task.started_at = utcnow()

        try:
            task.result = await self.context_manager.compact(
                task.messages, task.model, task.trigger, thread_id=task.thread_id
            )
            task.status = CompactionTaskStatus.COMPLETED
            task.completed_at = utcnow()
            if self.on_task_complete:
                self.on_task_complete(task)
        except Exception as e:
            task.status = CompactionTaskStatus.FAILED
            task.completed_at = utcnow()
            task.error = e
            logger.warning(
                "Background compaction failed", task_id=task.id, thread_id=task.thread_id, error=str(e)
            )
            if self.on_task_error:
                self.on_task_error(task)

        if self.get_pending_tasks() and not self._shutdown:
            self._arm_timer()

    def get_task(self, task_id: str) -> Optional[CompactionTask]:
        return self.tasks.get(task_id)

    def get_pending_tasks(self) -> List[CompactionTask]:
        return sorted(
            (t for t in self.tasks.values() if t.status == CompactionTaskStatus.PENDING),
            key=lambda t: t.created_at
        )

    def get_latest_task(self, thread_id: Optional[str] = None) -> Optional[CompactionTask]:
        """Most recently completed task of one thread"""
        completed = [
            t for t in self.tasks.values()
            if t.status == CompactionTaskStatus.COMPLETED and t.result is not None and t.thread_id == thread_id
        ]
        if not completed:
            return None
        return max(completed, key=lambda t: t.completed_at)

    def get_latest_result(self, thread_id: Optional[str] = None) -> Optional[CompactionResult]:
        task = self.get_latest_task(thread_id)
        return task.result if task else None

    def cancel(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status != CompactionTaskStatus.PENDING:
            return False
        del self.tasks[task_id]
        return True

    def cleanup(self) -> None:
        """Forget finished tasks"""
        for task_id in [t.id for t in self.tasks.values() if self._finished(t)]:
            del self.tasks[task_id]

    def forget_finished(self, thread_id: Optional[str]) -> None:
        """Forget the finished tasks of one thread"""
        for task_id in [t.id for t in self.tasks.values() if self._finished(t) and t.thread_id == thread_id]:
            del self.tasks[task_id]

    @staticmethod
    def _finished(task: CompactionTask) -> bool:
        return task.status in (CompactionTaskStatus.COMPLETED, CompactionTaskStatus.FAILED)

    def shutdown(self) -> None:
        self._shutdown = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        for task in self.tasks.values():
            if task.status == CompactionTaskStatus.PENDING:
                task.status = CompactionTaskStatus.FAILED
                task.error = RuntimeError("Scheduler shut down")
                task.completed_at = utcnow()
