"""File-backed checkpoint store: one JSON document per thread.

Thread ids are URL-quoted into file names so any id is safe on disk. The
documents use the persisted (camelCase) record layout, so they can be read by
other tooling without going through pydantic.
"""

from typing import List, Optional, Union
from pathlib import Path
from urllib.parse import quote, unquote
import asyncio
import json

import structlog
from pydantic import ValidationError

from threadloom.domain.models.agent_state import Checkpoint
from .checkpoint_store import CheckpointStore

logger = structlog.get_logger(__name__)


class FileCheckpointStore(CheckpointStore):
    def __init__(
        self,
        directory: Union[str, Path],
        namespace: Optional[str] = None,
        extension: str = ".json",
        pretty: bool = True
    ):
        self.base_dir = Path(directory)
        if namespace:
            self.base_dir = self.base_dir / quote(namespace, safe="")
        self.extension = extension
        self.pretty = pretty
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def get_file_path(self, thread_id: str) -> Path:
        return self.base_dir / f"{quote(thread_id, safe='')}{self.extension}"

    def _write(self, checkpoint: Checkpoint) -> None:
        path = self.get_file_path(checkpoint.thread_id)
        data = json.dumps(
            checkpoint.to_record(),
            ensure_ascii=False,
            indent=2 if self.pretty else None
        )
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(data, encoding="utf-8")
        tmp.replace(path)

    def _read(self, thread_id: str) -> Optional[Checkpoint]:
        path = self.get_file_path(thread_id)
        if not path.exists():
            return None
        try:
            return Checkpoint.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Invalid checkpoint file", path=str(path), error=str(e))
            return None

    async def save(self, checkpoint: Checkpoint) -> None:
        await asyncio.to_thread(self._write, checkpoint)

    async def load(self, thread_id: str) -> Optional[Checkpoint]:
        return await asyncio.to_thread(self._read, thread_id)

    async def list(self) -> List[str]:
        def scan() -> List[str]:
            return sorted(
                unquote(path.name[: -len(self.extension)])
                for path in self.base_dir.iterdir()
                if path.is_file() and path.name.endswith(self.extension)
            )

        return await asyncio.to_thread(scan)

    async def delete(self, thread_id: str) -> bool:
        def unlink() -> bool:
            path = self.get_file_path(thread_id)
            if not path.exists():
                return False
            path.unlink()
            return True

        return await asyncio.to_thread(unlink)

    async def exists(self, thread_id: str) -> bool:
        return self.get_file_path(thread_id).exists()
