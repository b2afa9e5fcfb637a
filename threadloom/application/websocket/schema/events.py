from typing import Dict, Any, Optional, List, Literal, Union
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum


class EventType(str, Enum):
    """WebSocket event types"""
    MARKDOWN = "markdown"
    COMPONENT = "component"
    STREAM_PART = "stream_part"
    ERROR = "error"
    CONNECTION = "connection"
    USER_MESSAGE = "user_message"


class ComponentType(str, Enum):
    """UI component types"""
    PROGRESS = "progress"
    UI_INTERACTION = "ui_interaction"
    FORM_SUBMIT = "form_submit"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=_now)
    thread_id: Optional[str] = None


class MarkdownEvent(BaseEvent):
    """Markdown content event for chat messages"""
    type: Literal[EventType.MARKDOWN] = EventType.MARKDOWN
    payload: str


class StreamPartEvent(BaseEvent):
    """Raw turn-loop event (tool calls, results, compaction, finish)"""
    type: Literal[EventType.STREAM_PART] = EventType.STREAM_PART
    payload: Dict[str, Any]


class ProgressData(BaseModel):
    """Progress component data"""
    status: str
    step_index: Optional[int] = None
    total_steps: Optional[int] = None


class FormField(BaseModel):
    """Form field definition"""
    type: Literal["text", "select", "textarea", "checkbox"]
    key: str
    label: str
    required: bool = False
    placeholder: Optional[str] = None
    options: Optional[List[Dict[str, str]]] = None  # For select fields
    default_value: Optional[Any] = None


class FormData(BaseModel):
    """Form component data"""
    id: str
    title: str
    description: Optional[str] = None
    fields: List[FormField]
    submit_label: str = "Submit"


class ComponentPayload(BaseModel):
    """Component event payload"""
    component: ComponentType
    data: Union[ProgressData, FormData, Dict[str, Any]]


class ComponentEvent(BaseEvent):
    """Component event for UI interactions"""
    type: Literal[EventType.COMPONENT] = EventType.COMPONENT
    payload: ComponentPayload


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]


class UserMessage(BaseEvent):
    """User message event"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str
    metadata: Optional[Dict[str, Any]] = None


class FormSubmitData(BaseModel):
    """Form submission data; for approvals form_id is the interrupt id"""
    form_id: str
    values: Dict[str, Any] = Field(default_factory=dict)
