from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import asyncio

from threadloom.domain.models.agent_state import Checkpoint


class CheckpointStore(ABC):
    """Persistence for per-thread checkpoints, keyed by thread id"""

    @abstractmethod
    async def save(self, checkpoint: Checkpoint) -> None:
        """Insert or overwrite the checkpoint for checkpoint.thread_id"""

    @abstractmethod
    async def load(self, thread_id: str) -> Optional[Checkpoint]:
        """Return the checkpoint for thread_id, or None"""

    @abstractmethod
    async def list(self) -> List[str]:
        """Thread ids that have a checkpoint"""

    @abstractmethod
    async def delete(self, thread_id: str) -> bool:
        """Remove a checkpoint; True if one existed"""

    async def exists(self, thread_id: str) -> bool:
        return await self.load(thread_id) is not None


class InMemoryCheckpointStore(CheckpointStore):
    """Default store: checkpoints live in a dict for the life of the process"""

    def __init__(self, namespace: Optional[str] = None):
        self.namespace = namespace
        self.checkpoints: Dict[str, Checkpoint] = {}
        self._lock = asyncio.Lock()

    def _key(self, thread_id: str) -> str:
        return f"{self.namespace}:{thread_id}" if self.namespace else thread_id

    async def save(self, checkpoint: Checkpoint) -> None:
        async with self._lock:
            # Copy in and out so callers never share state with the store
            self.checkpoints[self._key(checkpoint.thread_id)] = checkpoint.model_copy(deep=True)

    async def load(self, thread_id: str) -> Optional[Checkpoint]:
        async with self._lock:
            checkpoint = self.checkpoints.get(self._key(thread_id))
            return checkpoint.model_copy(deep=True) if checkpoint else None

    async def list(self) -> List[str]:
        async with self._lock:
            return [checkpoint.thread_id for checkpoint in self.checkpoints.values()]

    async def delete(self, thread_id: str) -> bool:
        async with self._lock:
            return self.checkpoints.pop(self._key(thread_id), None) is not None

    async def exists(self, thread_id: str) -> bool:
        async with self._lock:
            return self._key(thread_id) in self.checkpoints

    async def clear(self) -> None:
        async with self._lock:
            self.checkpoints.clear()
