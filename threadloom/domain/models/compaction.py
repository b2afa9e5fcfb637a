from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from .messages import Message
from .agent_state import utcnow


class CompactionStrategy(str, Enum):
    ROLLUP = "rollup"
    STRUCTURED = "structured"
    TIERED = "tiered"


class CompactionTrigger(str, Enum):
    TOKEN_THRESHOLD = "token_threshold"
    HARD_CAP = "hard_cap"
    GROWTH_RATE = "growth_rate"
    ERROR_FALLBACK = "error_fallback"
    MANUAL = "manual"


class CompactionPolicy(BaseModel):
    """When compaction fires"""
    enabled: bool = True
    token_threshold: float = Field(default=0.8, gt=0, le=1)
    hard_cap_threshold: float = Field(default=0.95, gt=0, le=1)
    enable_growth_rate_prediction: bool = False
    enable_error_fallback: bool = True


class SummarizationConfig(BaseModel):
    """What compaction keeps and how it summarizes the rest"""
    keep_message_count: int = Field(default=10, ge=0)
    keep_tool_result_count: int = Field(default=5, ge=0)
    strategy: CompactionStrategy = CompactionStrategy.ROLLUP
    summary_prompt: Optional[str] = None
    enable_structured_summary: bool = False
    enable_tiered_summaries: bool = False
    max_summary_tiers: int = Field(default=3, ge=1)
    messages_per_tier: int = Field(default=5, ge=1)
    summary_max_tokens: int = 1000


class CompactionSchedulerConfig(BaseModel):
    enable_background_compaction: bool = False
    debounce_delay: float = 5.0
    max_pending_tasks: int = Field(default=3, ge=1)


class ContextManagerConfig(BaseModel):
    max_tokens: int = Field(default=128000, gt=0)
    policy: CompactionPolicy = Field(default_factory=CompactionPolicy)
    summarization: SummarizationConfig = Field(default_factory=SummarizationConfig)
    scheduler: CompactionSchedulerConfig = Field(default_factory=CompactionSchedulerConfig)


class PinnedMessage(BaseModel):
    message_index: int
    reason: str
    pinned_at: datetime = Field(default_factory=utcnow)


class CompactionResult(BaseModel):
    """Outcome of one compact() call; folded into the next checkpoint by the agent"""
    strategy: CompactionStrategy
    trigger: CompactionTrigger
    summary: str = ""
    structured_summary: Optional[dict] = None
    summary_tier: Optional[int] = None
    new_messages: List[Message] = Field(default_factory=list)
    compacted_messages: List[Message] = Field(default_factory=list)
    messages_before: int = 0
    messages_after: int = 0
    tokens_before: int = 0
    tokens_after: int = 0

    @property
    def compacted(self) -> bool:
        return bool(self.compacted_messages)
