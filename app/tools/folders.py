"""Folder tools."""

from typing import Any

from pydantic import BaseModel, Field

from app.models.messages import ToolResult
from app.services.workspace import WorkspaceService
from app.tools.base import ToolDefinition
from app.tools.notes import placement

MAX_TREE_DEPTH = 5


class CreateFolderInput(BaseModel):
    """Input schema for create_folder."""

    name: str = Field(..., min_length=1, max_length=200, description="Folder name")
    container: str | None = Field(default=None, description="Container id or slug; defaults to the inbox")
    parent: str | None = Field(default=None, description="Parent folder id or slug for a nested folder")


class FolderTreeInput(BaseModel):
    """Input schema for get_folder_tree."""

    target: str = Field(..., min_length=1, description="Container or folder id or slug")
    depth: int = Field(default=2, ge=1, le=MAX_TREE_DEPTH, description="How many levels to expand")


class FolderRefInput(BaseModel):
    """Input schema for delete_folder."""

    folder: str = Field(..., min_length=1, description="Folder id or slug")


async def build_tree(workspace: WorkspaceService, resource_id: str, depth: int) -> dict[str, Any]:
    resource = await workspace.get(resource_id)
    node: dict[str, Any] = resource.summary()
    if resource.kind == "note" or depth == 0:
        return node

    children = sorted(await workspace.children(resource_id), key=lambda child: (child.kind != "folder", child.name))
    node["children"] = [await build_tree(workspace, child.id, depth - 1) for child in children]
    return node


def create_create_folder_tool(workspace: WorkspaceService) -> ToolDefinition:
    async def create_folder_handler(args: CreateFolderInput, caller_id: str, resource_ref: str | None) -> ToolResult:
        container_id, parent_id = await placement(workspace, caller_id, resource_ref)
        folder = await workspace.create(
            "folder", caller_id, args.name, container_id=container_id, parent_id=parent_id
        )
        return ToolResult.ok(folder.summary(), f"Created folder '{folder.name}' with id {folder.id}")

    return ToolDefinition(
        name="create_folder",
        description="Create a folder in a container, optionally nested inside another folder.",
        input_schema_class=CreateFolderInput,
        handler=create_folder_handler,
        permission="write",
        resource_fields=("parent", "container"),
        group="folders",
    )


def create_get_folder_tree_tool(workspace: WorkspaceService) -> ToolDefinition:
    async def get_folder_tree_handler(args: FolderTreeInput, caller_id: str, resource_ref: str | None) -> ToolResult:
        tree = await build_tree(workspace, resource_ref, args.depth)
        count = len(tree.get("children", []))
        return ToolResult.ok(tree, f"'{tree['name']}' has {count} direct entries")

    return ToolDefinition(
        name="get_folder_tree",
        description="List the folders and notes inside a container or folder as a tree.",
        input_schema_class=FolderTreeInput,
        handler=get_folder_tree_handler,
        permission="read",
        resource_fields=("target",),
        group="folders",
    )


def create_delete_folder_tool(workspace: WorkspaceService) -> ToolDefinition:
    async def delete_folder_handler(args: FolderRefInput, caller_id: str, resource_ref: str | None) -> ToolResult:
        folder = await workspace.get(resource_ref)
        if folder.kind != "folder":
            raise ValueError(f"'{args.folder}' is a {folder.kind}, not a folder")
        deleted = await workspace.delete(folder.id)
        return ToolResult.ok(
            {"id": folder.id, "deleted": len(deleted)},
            f"Deleted folder '{folder.name}' and {len(deleted) - 1} items inside it",
        )

    return ToolDefinition(
        name="delete_folder",
        description="Delete a folder together with every folder and note inside it. Only the owner may delete.",
        input_schema_class=FolderRefInput,
        handler=delete_folder_handler,
        permission="owner",
        resource_fields=("folder",),
        group="folders",
    )
