from typing import Dict, Any, List, Optional


class AgentError(Exception):
    """Base error for everything raised by the turn loop and its stores"""

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.metadata = metadata or {}
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "cause": str(self.cause) if self.cause else None,
            "metadata": self.metadata
        }


class ModelError(AgentError):
    """Model invocation failed"""

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        metadata: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None
    ):
        super().__init__(message, cause=cause, metadata=metadata)
        self.retryable = is_retryable_error(self) if retryable is None else retryable

    @property
    def is_context_length_error(self) -> bool:
        return is_context_length_error(self)


class ToolExecutionError(AgentError):
    """A tool raised while executing"""

    def __init__(
        self,
        tool_name: str,
        message: str,
        cause: Optional[BaseException] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, cause=cause, metadata=metadata)
        self.tool_name = tool_name


class ConfigurationError(AgentError):
    """Caller or wiring mistake; never retried"""


class CompactionError(AgentError):
    """Summary generation failed; the caller's messages were left as they were"""


class CheckpointError(AgentError):
    """A checkpoint store failed to load or save"""

    def __init__(
        self,
        message: str,
        operation: str,
        thread_id: Optional[str] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message, cause=cause, metadata={"operation": operation, "thread_id": thread_id})
        self.operation = operation
        self.thread_id = thread_id


class InterruptSignal(Exception):
    """Raised through a tool handler when it asks for input nobody has given yet.

    Not an error: the turn is suspended with a custom interrupt carrying
    `request`, and `responses` holds the answers already replayed to the tool.
    """

    def __init__(self, request: Any, responses: Optional[List[Any]] = None):
        super().__init__("Tool requested an interrupt")
        self.request = request
        self.responses = list(responses or [])


CONTEXT_LENGTH_MARKERS = ("context", "token", "too long")

RETRYABLE_MARKERS = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
    "timeout",
    "timed out",
    "overloaded",
    "service unavailable",
    "502",
    "503",
    "504",
    "econnreset",
)


def _error_texts(error: BaseException) -> str:
    texts = [str(error)]
    cause = getattr(error, "cause", None) or error.__cause__
    if cause is not None:
        texts.append(str(cause))
    return " ".join(texts).lower()


def is_context_length_error(error: BaseException) -> bool:
    """Heuristic: does this failure look like the context window overflowing?"""
    text = _error_texts(error)
    return any(marker in text for marker in CONTEXT_LENGTH_MARKERS)


def is_retryable_error(error: BaseException) -> bool:
    text = _error_texts(error)
    if is_context_length_error(error):
        return False
    return any(marker in text for marker in RETRYABLE_MARKERS)


def normalize_model_error(error: BaseException, thread_id: Optional[str] = None) -> ModelError:
    """Wrap whatever the model collaborator raised into a ModelError"""

    if isinstance(error, ModelError):
        return error

    return ModelError(
        f"Generation failed: {error}",
        cause=error,
        metadata={"thread_id": thread_id} if thread_id else None
    )
