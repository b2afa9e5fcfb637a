from typing import Dict, Any, List, Optional, Literal
from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime, timezone
import uuid

from .messages import Message, RecordModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentState(RecordModel):
    """Auxiliary per-thread state carried inside every checkpoint"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    todos: List[Dict[str, Any]] = Field(default_factory=list)
    files: Dict[str, Any] = Field(default_factory=dict)


class ApprovalInterrupt(RecordModel):
    """Suspension point of a tool call.

    `approval` interrupts wait for an ApprovalDecision before the call runs.
    `custom` interrupts were raised by the running tool itself: `request` is
    what it asked for, `responses` the answers given to its earlier requests.
    """
    id: str = Field(default_factory=lambda: f"int_{uuid.uuid4().hex}")
    thread_id: str
    type: Literal["approval", "custom"] = "approval"
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    step: int
    request: Optional[Any] = None
    responses: List[Any] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class ApprovalDecision(RecordModel):
    """Human response to an approval interrupt"""
    approved: bool
    reason: Optional[str] = None


class Checkpoint(RecordModel):
    """Durable snapshot of a thread"""
    thread_id: str
    step: int = 0
    messages: List[Message] = Field(default_factory=list)
    state: AgentState = Field(default_factory=AgentState)
    pending_interrupt: Optional[ApprovalInterrupt] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def create(
        cls,
        thread_id: str,
        messages: Optional[List[Message]] = None,
        state: Optional[AgentState] = None,
        step: int = 0,
        **extra: Any
    ) -> "Checkpoint":
        now = utcnow()
        return cls(
            thread_id=thread_id,
            step=step,
            messages=list(messages or []),
            state=state or AgentState(),
            created_at=now,
            updated_at=now,
            **extra
        )

    def updated(self, **changes: Any) -> "Checkpoint":
        """Copy with changes applied; thread_id and created_at never move"""
        changes.pop("thread_id", None)
        changes.pop("created_at", None)
        step = changes.get("step")
        if step is not None and step < self.step:
            raise ValueError(f"Checkpoint step cannot go backwards ({self.step} -> {step})")
        changes["updated_at"] = utcnow()
        return self.model_copy(update=changes, deep=True)

    def get_state_summary(self) -> Dict[str, Any]:
        """Short summary of the checkpoint, for logs and listings"""
        return {
            "thread_id": self.thread_id,
            "step": self.step,
            "messages": len(self.messages),
            "todos": len(self.state.todos),
            "files": len(self.state.files),
            "pending_interrupt": self.pending_interrupt.id if self.pending_interrupt else None,
            "updated_at": self.updated_at.isoformat()
        }
