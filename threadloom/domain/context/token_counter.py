from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import hashlib
import json
import math

from pydantic import BaseModel

from threadloom.domain.models.messages import Message

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4


class TokenBudget(BaseModel):
    """Snapshot of context-window usage"""
    max_tokens: int
    current_tokens: int
    usage: float
    remaining: int
    is_actual: bool = False

    @classmethod
    def create(cls, max_tokens: int, current_tokens: int, is_actual: bool = False) -> "TokenBudget":
        return cls(
            max_tokens=max_tokens,
            current_tokens=current_tokens,
            usage=current_tokens / max_tokens if max_tokens > 0 else 1.0,
            remaining=max(0, max_tokens - current_tokens),
            is_actual=is_actual
        )


class TokenCounter(ABC):
    @abstractmethod
    def count(self, text: str) -> int:
        pass

    @abstractmethod
    def count_messages(self, messages: List[Message]) -> int:
        pass

    def invalidate_cache(self) -> None:
        pass


class ApproximateTokenCounter(TokenCounter):
    """Character-based estimate: about four characters per token"""

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN, message_overhead: int = MESSAGE_OVERHEAD_TOKENS):
        self.chars_per_token = chars_per_token
        self.message_overhead = message_overhead
        self._cache: Dict[str, int] = {}

    def count(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)

    def _message_key(self, message: Message) -> str:
        payload = json.dumps(message.to_record(), sort_keys=True, default=str)
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()

    def _count_message(self, message: Message) -> int:
        key = self._message_key(message)
        cached: Optional[int] = self._cache.get(key)
        if cached is not None:
            return cached

        if isinstance(message.content, str):
            tokens = self.count(message.content)
        else:
            tokens = 0
            for part in message.content:
                if part.type == "text":
                    tokens += self.count(part.text)
                elif part.type == "tool-call":
                    tokens += self.count(part.tool_name) + self.count(json.dumps(part.args, default=str))
                else:
                    output = part.output if isinstance(part.output, str) else json.dumps(part.output, default=str)
                    tokens += self.count(output)

        tokens += self.message_overhead
        self._cache[key] = tokens
        return tokens

    def count_messages(self, messages: List[Message]) -> int:
        return sum(self._count_message(message) for message in messages)

    def invalidate_cache(self) -> None:
        self._cache.clear()
