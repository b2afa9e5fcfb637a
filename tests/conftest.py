from typing import Any, Dict, List, Optional, Union

import pytest

from threadloom.domain.models.messages import Message
from threadloom.domain.models.results import ModelResponse, ToolCall, Usage
from threadloom.domain.orchestration.model import ModelInvoker


class ScriptedModel(ModelInvoker):
    """Model fake that replays queued responses (or raises queued exceptions)"""

    name = "scripted"

    def __init__(self, script: Optional[List[Union[ModelResponse, BaseException]]] = None):
        self.script = list(script or [])
        self.calls: List[Dict[str, Any]] = []

    def push(self, *items: Union[ModelResponse, BaseException]) -> None:
        self.script.extend(items)

    async def invoke(self, messages, tools=None, max_tokens=None) -> ModelResponse:
        self.calls.append({"messages": list(messages), "tools": tools, "max_tokens": max_tokens})
        if not self.script:
            raise AssertionError("ScriptedModel ran out of responses")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def reply(text: str, total_tokens: Optional[int] = None) -> ModelResponse:
    return ModelResponse(text=text, usage=Usage(total_tokens=total_tokens))


def call(tool_name: str, tool_call_id: str = "call_1", text: str = "", **args: Any) -> ModelResponse:
    """A response requesting one tool call; keyword arguments become the call args"""
    return ModelResponse(
        text=text,
        tool_calls=[ToolCall(tool_call_id=tool_call_id, tool_name=tool_name, args=args)],
        finish_reason="tool-calls"
    )


def roles(messages: List[Message]) -> List[str]:
    return [m.role for m in messages]


@pytest.fixture
def model() -> ScriptedModel:
    return ScriptedModel()
