from typing import List, Optional, Union
from datetime import timedelta
from pathlib import Path
from urllib.parse import quote
import asyncio
import json

import structlog
from pydantic import ValidationError

from threadloom.domain.models.background_task import (
    BackgroundTask, StatusFilter, normalize_status_filter
)
from .task_store import TaskStore

logger = structlog.get_logger(__name__)


class FileTaskStore(TaskStore):
    """One JSON file per task under a directory"""

    def __init__(
        self,
        directory: Union[str, Path],
        namespace: Optional[str] = None,
        expiration: Optional[timedelta] = None
    ):
        super().__init__(expiration)
        self.base_dir = Path(directory)
        if namespace:
            self.base_dir = self.base_dir / quote(namespace, safe="")
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, task_id: str) -> Path:
        return self.base_dir / f"task_{quote(task_id, safe='')}.json"

    def _read_path(self, path: Path) -> Optional[BackgroundTask]:
        try:
            return BackgroundTask.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Invalid task file", path=str(path), error=str(e))
            return None

    async def save(self, task: BackgroundTask) -> None:
        def write() -> None:
            path = self._path(task.id)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(task.to_record(), ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.replace(path)

        await asyncio.to_thread(write)

    async def load(self, task_id: str) -> Optional[BackgroundTask]:
        return await asyncio.to_thread(self._read_path, self._path(task_id))

    async def list_tasks(self, status: StatusFilter = None) -> List[BackgroundTask]:
        statuses = normalize_status_filter(status)

        def scan() -> List[BackgroundTask]:
            tasks = []
            for path in sorted(self.base_dir.glob("task_*.json")):
                task = self._read_path(path)
                if task is not None and (statuses is None or task.status in statuses):
                    tasks.append(task)
            return tasks

        return await asyncio.to_thread(scan)

    async def delete(self, task_id: str) -> bool:
        def unlink() -> bool:
            path = self._path(task_id)
            if not path.exists():
                return False
            path.unlink()
            return True

        return await asyncio.to_thread(unlink)
