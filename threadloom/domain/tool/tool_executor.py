from typing import Dict, Any, Optional, Callable
import asyncio
import inspect
import time

import structlog

from threadloom.domain.errors import ConfigurationError, InterruptSignal, ToolExecutionError
from threadloom.infrastructure.observability.logging import agent_logger
from .tool_registry import ToolRegistry, Tool
from .tool_validator import ToolParameterValidator

logger = structlog.get_logger(__name__)


class ToolExecutor:
    """Resolves tools by name and runs them with timing and error capture"""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    def resolve(self, tool_name: str) -> Tool:
        tool = self.registry.get(tool_name)
        if tool is None:
            raise ConfigurationError(f'Tool "{tool_name}" not found', metadata={"tool_name": tool_name})
        return tool

    async def execute(
        self,
        tool_name: str,
        args: Dict[str, Any],
        tool_call_id: str = "",
        thread_id: Optional[str] = None,
        interrupt: Optional[Callable[[Any], Any]] = None
    ) -> Any:
        """Run a tool and return its output.

        Handlers may be plain functions or coroutines; they receive the tool
        arguments as keyword arguments. A handler declaring an `interrupt`
        parameter also receives `interrupt` (None where the call cannot be
        suspended); InterruptSignal raised through it propagates unchanged.
        Anything else the handler raises comes back as ToolExecutionError.
        """

        tool = self.resolve(tool_name)

        validation = ToolParameterValidator.validate_tool_call(tool, args)
        if not validation.is_valid:
            raise ToolExecutionError(
                tool_name,
                f'Invalid arguments for tool "{tool_name}": ' + "; ".join(validation.errors)
            )

        kwargs = dict(args)
        if _accepts_interrupt(tool.handler):
            kwargs["interrupt"] = interrupt

        start = time.perf_counter()

        try:
            if inspect.iscoroutinefunction(tool.handler):
                pending = tool.handler(**kwargs)
            else:
                pending = asyncio.to_thread(tool.handler, **kwargs)

            if tool.timeout is not None:
                output = await asyncio.wait_for(pending, timeout=tool.timeout)
            else:
                output = await pending

        except InterruptSignal:
            self._log(tool, tool_call_id, thread_id, start, success=False, error="interrupted")
            raise

        except asyncio.TimeoutError as e:
            self._log(tool, tool_call_id, thread_id, start, success=False, error="timeout")
            raise ToolExecutionError(tool_name, f'Tool "{tool_name}" timed out after {tool.timeout}s', cause=e) from e

        except Exception as e:
            self._log(tool, tool_call_id, thread_id, start, success=False, error=str(e))
            raise ToolExecutionError(tool_name, f'Tool "{tool_name}" failed: {e}', cause=e) from e

        self._log(tool, tool_call_id, thread_id, start, success=True)
        return output

    def _log(
        self,
        tool: Tool,
        tool_call_id: str,
        thread_id: Optional[str],
        start: float,
        success: bool,
        error: Optional[str] = None
    ) -> None:
        agent_logger.log_tool_execution(
            tool_name=tool.name,
            thread_id=thread_id,
            tool_call_id=tool_call_id,
            duration_ms=(time.perf_counter() - start) * 1000,
            success=success,
            error=error
        )


def _accepts_interrupt(handler: Callable[..., Any]) -> bool:
    try:
        return "interrupt" in inspect.signature(handler).parameters
    except (TypeError, ValueError):
        return False
