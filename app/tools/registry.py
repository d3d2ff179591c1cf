"""Tools registry for managing assistant tools."""

from app.models.errors import UnknownTool
from app.models.llm import ToolSpec
from app.services.workspace import WorkspaceService
from app.tools.base import ToolDefinition
from app.tools.containers import create_create_container_tool, create_list_containers_tool
from app.tools.folders import create_create_folder_tool, create_delete_folder_tool, create_get_folder_tree_tool
from app.tools.notes import (
    create_create_note_tool,
    create_delete_note_tool,
    create_get_note_tool,
    create_move_note_tool,
    create_update_note_tool,
)
from app.utils.logging import get_logger

logger = get_logger(__name__)

ALL_CAPABILITIES = "*"


class ToolsRegistry:
    """Maps tool names to their schema, handler and required permission."""

    def __init__(self, workspace: WorkspaceService):
        """Initialize tools registry with service dependencies."""
        self.workspace = workspace
        self._tools: dict[str, ToolDefinition] = {}
        self._register_default_tools()

    def _register_default_tools(self) -> None:
        """Register the default set of workspace tools."""
        tools = [
            create_create_note_tool(self.workspace),
            create_get_note_tool(self.workspace),
            create_update_note_tool(self.workspace),
            create_move_note_tool(self.workspace),
            create_delete_note_tool(self.workspace),
            create_create_folder_tool(self.workspace),
            create_get_folder_tree_tool(self.workspace),
            create_delete_folder_tool(self.workspace),
            create_create_container_tool(self.workspace),
            create_list_containers_tool(self.workspace),
        ]

        for tool in tools:
            self.register_tool(tool)

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry."""
        if tool.name in self._tools:
            logger.warning(f"Replacing registered tool {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> ToolDefinition:
        """Look up a tool by name.

        Raises:
            UnknownTool: If no tool has that name
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownTool(name)
        return tool

    def resolve(self, capabilities: tuple[str, ...] | list[str]) -> list[ToolDefinition]:
        """Resolve an agent's capability list to its tool subset.

        Each capability is a tool group, an exact tool name, or `*`. Tools keep
        registration order; unknown capabilities are logged and ignored.
        """
        if ALL_CAPABILITIES in capabilities:
            return list(self._tools.values())

        wanted = set(capabilities)
        known = {tool.group for tool in self._tools.values()} | set(self._tools)
        for capability in wanted - known:
            logger.warning(f"Ignoring unknown capability '{capability}'")

        return [tool for tool in self._tools.values() if tool.name in wanted or tool.group in wanted]

    def specs(self, tools: list[ToolDefinition]) -> list[ToolSpec]:
        return [tool.to_spec() for tool in tools]

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools


_tools_registry: ToolsRegistry | None = None


def get_tools_registry(workspace: WorkspaceService | None = None) -> ToolsRegistry:
    """Get or create tools registry instance."""
    global _tools_registry

    if _tools_registry is None:
        if workspace is None:
            raise ValueError("Must provide a workspace service for initial registry creation")
        _tools_registry = ToolsRegistry(workspace)

    return _tools_registry
