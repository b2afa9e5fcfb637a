from typing import Dict, Any, Optional, Union, Iterable, List
from pydantic import Field
from datetime import datetime, timedelta
from enum import Enum

from .messages import RecordModel
from .agent_state import utcnow


class TaskStatus(str, Enum):
    """Background task status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.KILLED)

    @property
    def is_active(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.RUNNING)


# Forward-only lifecycle: pending -> running -> terminal
ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.KILLED},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.KILLED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.KILLED: set(),
}

StatusFilter = Optional[Union[TaskStatus, str, Iterable[Union[TaskStatus, str]]]]


def normalize_status_filter(status: StatusFilter) -> Optional[List[TaskStatus]]:
    if status is None:
        return None
    if isinstance(status, (TaskStatus, str)):
        return [TaskStatus(status)]
    return [TaskStatus(s) for s in status]


class BackgroundTask(RecordModel):
    """An asynchronously executing tool invocation"""
    id: str
    subagent_type: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        id: str,
        subagent_type: str,
        description: str,
        **extra: Any
    ) -> "BackgroundTask":
        now = utcnow()
        extra.setdefault("created_at", now)
        extra.setdefault("updated_at", now)
        return cls(id=id, subagent_type=subagent_type, description=description, **extra)

    def can_transition_to(self, status: TaskStatus) -> bool:
        if status == self.status:
            return True
        return status in ALLOWED_TRANSITIONS[self.status]

    def updated(self, **changes: Any) -> "BackgroundTask":
        """Copy with changes applied; id and created_at never move"""
        changes.pop("id", None)
        changes.pop("created_at", None)
        if "status" in changes:
            changes["status"] = TaskStatus(changes["status"])
        changes["updated_at"] = utcnow()
        return self.model_copy(update=changes, deep=True)

    @property
    def effective_timestamp(self) -> datetime:
        return self.completed_at or self.updated_at


def should_expire_task(task: BackgroundTask, max_age: timedelta, now: Optional[datetime] = None) -> bool:
    """Only terminal tasks expire, measured from completion (or last update)"""
    if not task.status.is_terminal:
        return False
    now = now or utcnow()
    return now - task.effective_timestamp > max_age
