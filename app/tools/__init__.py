"""Tools the assistant can call against the notes workspace."""

from app.tools.arguments import repair_arguments
from app.tools.base import ToolDefinition
from app.tools.registry import ToolsRegistry, get_tools_registry

__all__ = ["ToolDefinition", "ToolsRegistry", "get_tools_registry", "repair_arguments"]
