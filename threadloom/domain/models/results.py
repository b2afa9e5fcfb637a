from typing import Dict, Any, List, Optional, Literal
from pydantic import BaseModel, Field

from .agent_state import ApprovalInterrupt
from .messages import Message


class Usage(BaseModel):
    """Token usage reported by the model"""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    def __add__(self, other: "Usage") -> "Usage":
        def add(a: Optional[int], b: Optional[int]) -> Optional[int]:
            if a is None and b is None:
                return None
            return (a or 0) + (b or 0)

        return Usage(
            input_tokens=add(self.input_tokens, other.input_tokens),
            output_tokens=add(self.output_tokens, other.output_tokens),
            total_tokens=add(self.total_tokens, other.total_tokens)
        )


class ToolCall(BaseModel):
    """A tool call requested by the model"""
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ModelResponse(BaseModel):
    """What one model invocation returns"""
    text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str = "stop"


class ToolResult(BaseModel):
    """Outcome of one tool call inside a turn"""
    tool_call_id: str
    tool_name: str
    output: Any = None
    is_error: bool = False


class GenerateStep(BaseModel):
    """One model invocation inside a turn"""
    text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_results: List[ToolResult] = Field(default_factory=list)
    finish_reason: str = "stop"
    usage: Usage = Field(default_factory=Usage)


class GenerateResult(BaseModel):
    """Terminal result of generate/resume"""
    status: Literal["complete", "interrupted"]
    text: str = ""
    usage: Usage = Field(default_factory=Usage)
    finish_reason: Optional[str] = None
    steps: List[GenerateStep] = Field(default_factory=list)
    interrupt: Optional[ApprovalInterrupt] = None
    thread_id: Optional[str] = None
    messages: List[Message] = Field(default_factory=list, exclude=True)


StreamPartType = Literal["text-delta", "tool-call", "tool-result", "interrupt", "compaction", "finish"]


class StreamPart(BaseModel):
    """Incremental event yielded by Agent.stream"""
    type: StreamPartType
    text: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    args: Optional[Dict[str, Any]] = None
    output: Any = None
    interrupt: Optional[ApprovalInterrupt] = None
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    data: Optional[Dict[str, Any]] = None
    result: Optional[GenerateResult] = Field(default=None, exclude=True)
