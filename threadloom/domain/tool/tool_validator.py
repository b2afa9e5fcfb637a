# Parameter validation against each tool's JSON schema
from typing import Dict, Any, List
from dataclasses import dataclass, field

import jsonschema

from .tool_registry import Tool


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


class ToolParameterValidator:
    @staticmethod
    def validate_tool_call(tool: Tool, parameters: Dict[str, Any]) -> ValidationResult:
        if not tool.parameters:
            return ValidationResult(True)

        try:
            jsonschema.validate(parameters, tool.parameters)
            return ValidationResult(True)
        except jsonschema.ValidationError as e:
            return ValidationResult(False, [f"Schema validation failed: {e.message}"])
        except jsonschema.SchemaError as e:
            return ValidationResult(False, [f"Invalid schema for tool {tool.name}: {e.message}"])
