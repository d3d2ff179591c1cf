"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from app.models.llm import ToolSpec
from app.services.workspace import PermissionLevel

# (validated arguments, caller id, canonical id of the target resource or None)
ToolHandler = Callable[[BaseModel, str, str | None], Awaitable[Any]]


@dataclass
class ToolDefinition:
    """Definition of a tool available to the assistant.

    `resource_fields` names the argument fields that may hold the target
    resource reference, in order of precedence. The first one present is
    resolved and permission-checked before the handler runs.
    """

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler
    permission: PermissionLevel = "read"
    resource_fields: tuple[str, ...] = ()
    group: str = "general"

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return self.input_schema_class.model_json_schema()

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Parse and validate tool input."""
        return self.input_schema_class.model_validate(raw_input)

    def target_ref(self, arguments: BaseModel) -> str | None:
        """Reference of the resource this call acts on, if any."""
        for field_name in self.resource_fields:
            value = getattr(arguments, field_name, None)
            if value:
                return str(value)
        return None

    def to_spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, parameters=self.get_json_schema())
