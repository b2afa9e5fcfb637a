"""Startup and housekeeping utilities for persisted background tasks.

These operate on the TaskStore only. They are meant to run once when the
process starts (recover_running_tasks) and on a schedule (cleanup_stale_tasks).
"""

from typing import List, Optional, Pattern, Union
from datetime import datetime, timedelta
import re

import structlog

from threadloom.domain.models.agent_state import utcnow
from threadloom.domain.models.background_task import BackgroundTask, TaskStatus
from .task_store import TaskStore

logger = structlog.get_logger(__name__)

RESTART_ERROR = "Task interrupted by agent restart"


async def recover_running_tasks(store: Optional[TaskStore]) -> int:
    """Mark every persisted running task as failed; returns the count rewritten"""

    if store is None:
        return 0

    recovered = 0
    for task in await store.list_tasks(status=TaskStatus.RUNNING):
        await store.save(task.updated(
            status=TaskStatus.FAILED,
            error=RESTART_ERROR,
            completed_at=utcnow()
        ))
        recovered += 1

    if recovered:
        logger.warning("Recovered running tasks after restart", count=recovered)
    return recovered


async def recover_failed_tasks(
    store: TaskStore,
    error_pattern: Optional[Union[str, Pattern[str]]] = None,
    min_created_at: Optional[datetime] = None,
    max_created_at: Optional[datetime] = None
) -> List[BackgroundTask]:
    """Failed tasks matching every given filter, for inspection or retry"""

    tasks = await store.list_tasks(status=TaskStatus.FAILED)

    if error_pattern is not None:
        pattern = re.compile(error_pattern) if isinstance(error_pattern, str) else error_pattern
        tasks = [t for t in tasks if t.error and pattern.search(t.error)]

    if min_created_at is not None:
        tasks = [t for t in tasks if t.created_at >= min_created_at]

    if max_created_at is not None:
        tasks = [t for t in tasks if t.created_at <= max_created_at]

    return tasks


async def cleanup_stale_tasks(store: TaskStore, max_age: Union[timedelta, int, float]) -> int:
    """Delete completed/failed tasks older than max_age (a timedelta or milliseconds)"""

    if not isinstance(max_age, timedelta):
        max_age = timedelta(milliseconds=max_age)

    now = utcnow()
    cleaned = 0
    for task in await store.list_tasks(status=[TaskStatus.COMPLETED, TaskStatus.FAILED]):
        if now - task.effective_timestamp > max_age:
            await store.delete(task.id)
            cleaned += 1

    if cleaned:
        logger.info("Cleaned up stale tasks", count=cleaned, max_age_seconds=max_age.total_seconds())
    return cleaned
