from typing import Any, Dict, List

import jsonschema
from pydantic import BaseModel, Field

from .action_adapter import ActionDefinition


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


class ToolParameterValidator:
    """Checks tool arguments against the action's JSON Schema"""

    @staticmethod
    def validate_tool_call(tool: ActionDefinition, parameters: Dict[str, Any]) -> ValidationResult:
        schema = tool.input_schema or {"type": "object"}

        try:
            jsonschema.validate(parameters, schema)
            return ValidationResult(is_valid=True)

        except jsonschema.ValidationError as e:
            location = "/".join(str(part) for part in e.absolute_path)
            prefix = f"{location}: " if location else ""
            return ValidationResult(is_valid=False, errors=[f"Schema validation failed: {prefix}{e.message}"])
        except jsonschema.SchemaError as e:
            return ValidationResult(is_valid=False, errors=[f"Invalid schema for '{tool.name}': {e.message}"])
