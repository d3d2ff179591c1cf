"""Container tools."""

from pydantic import BaseModel, Field

from app.models.messages import ToolResult
from app.services.workspace import WorkspaceService
from app.tools.base import ToolDefinition


class CreateContainerInput(BaseModel):
    """Input schema for create_container."""

    name: str = Field(..., min_length=1, max_length=200, description="Container name")


class EmptyInput(BaseModel):
    """Empty input schema for tools that don't require parameters."""


def create_create_container_tool(workspace: WorkspaceService) -> ToolDefinition:
    async def create_container_handler(
        args: CreateContainerInput, caller_id: str, resource_ref: str | None
    ) -> ToolResult:
        container = await workspace.create("container", caller_id, args.name)
        return ToolResult.ok(container.summary(), f"Created container '{container.name}' with id {container.id}")

    return ToolDefinition(
        name="create_container",
        description="Create a new top-level container owned by the user.",
        input_schema_class=CreateContainerInput,
        handler=create_container_handler,
        permission="write",
        group="containers",
    )


def create_list_containers_tool(workspace: WorkspaceService) -> ToolDefinition:
    async def list_containers_handler(args: EmptyInput, caller_id: str, resource_ref: str | None) -> ToolResult:
        containers = await workspace.list_containers(caller_id)
        return ToolResult.ok(
            [container.summary() for container in containers],
            f"Found {len(containers)} containers",
        )

    return ToolDefinition(
        name="list_containers",
        description="List the containers the user owns or that were shared with them.",
        input_schema_class=EmptyInput,
        handler=list_containers_handler,
        permission="read",
        group="containers",
    )
