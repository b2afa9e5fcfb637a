from .tool_registry import Tool, ToolRegistry
from .tool_executor import ToolExecutor
from .tool_validator import ToolParameterValidator, ValidationResult
