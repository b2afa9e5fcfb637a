from .messages import (
    Message, Part, TextPart, ToolCallPart, ToolResultPart,
    text_of, user_message, assistant_message, system_message,
    tool_call_message, tool_result_message
)
from .agent_state import AgentState, ApprovalInterrupt, ApprovalDecision, Checkpoint, utcnow
from .background_task import BackgroundTask, TaskStatus, should_expire_task
from .results import (
    Usage, ToolCall, ModelResponse, ToolResult, GenerateStep,
    GenerateResult, StreamPart
)
from .compaction import (
    CompactionStrategy, CompactionTrigger, CompactionPolicy, SummarizationConfig,
    CompactionSchedulerConfig, ContextManagerConfig, PinnedMessage, CompactionResult
)
