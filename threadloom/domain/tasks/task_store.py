from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from datetime import timedelta
import asyncio

from threadloom.domain.models.background_task import (
    BackgroundTask, StatusFilter, normalize_status_filter, should_expire_task
)


class TaskStore(ABC):
    """Durable mirror of background task records"""

    def __init__(self, expiration: Optional[timedelta] = None):
        self.expiration = expiration

    @abstractmethod
    async def save(self, task: BackgroundTask) -> None:
        """Insert or overwrite a task record"""

    @abstractmethod
    async def load(self, task_id: str) -> Optional[BackgroundTask]:
        """Return the task record, or None"""

    @abstractmethod
    async def list_tasks(self, status: StatusFilter = None) -> List[BackgroundTask]:
        """All task records, optionally filtered by status"""

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        """Remove a task record; True if one existed"""

    async def list(self, status: StatusFilter = None) -> List[str]:
        return [task.id for task in await self.list_tasks(status)]

    async def exists(self, task_id: str) -> bool:
        return await self.load(task_id) is not None

    async def cleanup(self) -> int:
        """Delete expired terminal tasks and return the count"""

        if self.expiration is None:
            return 0

        expired = [
            task for task in await self.list_tasks()
            if should_expire_task(task, self.expiration)
        ]
        for task in expired:
            await self.delete(task.id)

        return len(expired)


class InMemoryTaskStore(TaskStore):
    """Default task store, keeps records in a dict"""

    def __init__(self, expiration: Optional[timedelta] = None):
        super().__init__(expiration)
        self.tasks: Dict[str, BackgroundTask] = {}
        self._lock = asyncio.Lock()

    async def save(self, task: BackgroundTask) -> None:
        async with self._lock:
            self.tasks[task.id] = task.model_copy(deep=True)

    async def load(self, task_id: str) -> Optional[BackgroundTask]:
        async with self._lock:
            task = self.tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    async def list_tasks(self, status: StatusFilter = None) -> List[BackgroundTask]:
        statuses = normalize_status_filter(status)

        async with self._lock:
            return [
                task.model_copy(deep=True)
                for task in self.tasks.values()
                if statuses is None or task.status in statuses
            ]

    async def delete(self, task_id: str) -> bool:
        async with self._lock:
            if task_id in self.tasks:
                del self.tasks[task_id]
                return True
            return False

    async def get_stats(self) -> Dict[str, int]:
        """Count of records per status"""

        async with self._lock:
            stats: Dict[str, int] = {"total": len(self.tasks)}
            for task in self.tasks.values():
                stats[task.status.value] = stats.get(task.status.value, 0) + 1
            return stats
