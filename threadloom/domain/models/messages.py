from typing import Dict, Any, List, Optional, Literal, Union, Annotated
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RecordModel(BaseModel):
    """Base for persisted records: snake_case in Python, camelCase on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> Dict[str, Any]:
        """JSON-compatible dict using the persisted field names.
        Explicit nulls are kept, including those in extra fields."""
        return self.model_dump(mode="json", by_alias=True)


class TextPart(RecordModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolCallPart(RecordModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(RecordModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None


Part = Annotated[Union[TextPart, ToolCallPart, ToolResultPart], Field(discriminator="type")]

Role = Literal["user", "assistant", "tool", "system"]


class Message(RecordModel):
    """One conversation message; never mutated once appended"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Role
    content: Union[str, List[Part]]

    @property
    def parts(self) -> List[Any]:
        if isinstance(self.content, str):
            return [TextPart(text=self.content)]
        return list(self.content)

    @property
    def tool_calls(self) -> List[ToolCallPart]:
        return [part for part in self.parts if isinstance(part, ToolCallPart)]

    @property
    def tool_results(self) -> List[ToolResultPart]:
        return [part for part in self.parts if isinstance(part, ToolResultPart)]

    @property
    def is_tool_result(self) -> bool:
        return self.role == "tool" and bool(self.tool_results)


def text_of(message: Message) -> str:
    """Flatten the text parts of a message"""
    if isinstance(message.content, str):
        return message.content
    return "\n".join(part.text for part in message.content if isinstance(part, TextPart))


def user_message(text: str) -> Message:
    return Message(role="user", content=text)


def assistant_message(text: str) -> Message:
    return Message(role="assistant", content=text)


def system_message(text: str) -> Message:
    return Message(role="system", content=text)


def tool_call_message(calls: List[ToolCallPart], text: Optional[str] = None) -> Message:
    parts: List[Any] = [TextPart(text=text)] if text else []
    parts.extend(calls)
    return Message(role="assistant", content=parts)


def tool_result_message(results: List[ToolResultPart]) -> Message:
    return Message(role="tool", content=list(results))
