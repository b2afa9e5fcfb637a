from abc import ABC, abstractmethod
from typing import Dict, Any, AsyncIterator, List, Optional, Union

from threadloom.domain.models.messages import Message
from threadloom.domain.models.results import ModelResponse


class ModelInvoker(ABC):
    """The language-model collaborator: messages in, one response out"""

    name: str = "model"

    @abstractmethod
    async def invoke(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None
    ) -> ModelResponse:
        """Run one model invocation"""
        pass

    async def stream(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None
    ) -> AsyncIterator[Union[str, ModelResponse]]:
        """Yield text deltas, then the complete ModelResponse last.

        Models without native streaming deliver the whole text as one delta.
        """
        response = await self.invoke(messages, tools=tools, max_tokens=max_tokens)
        if response.text:
            yield response.text
        yield response

    def get_info(self) -> Dict[str, Any]:
        return {"name": self.name, "type": type(self).__name__}
