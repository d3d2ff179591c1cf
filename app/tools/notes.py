"""Note tools: create, read, update, move and delete notes."""

from pydantic import BaseModel, Field

from app.models.errors import ResourceNotFound
from app.models.messages import ToolResult
from app.services.workspace import Resource, WorkspaceService, require_permission
from app.tools.base import ToolDefinition

MAX_NOTE_CHARS = 100_000


class CreateNoteInput(BaseModel):
    """Input schema for create_note."""

    title: str = Field(..., min_length=1, max_length=200, description="Title of the new note")
    content: str = Field(default="", max_length=MAX_NOTE_CHARS, description="Markdown body of the note")
    container: str | None = Field(
        default=None, description="Container id or slug; defaults to the user's inbox"
    )
    folder: str | None = Field(default=None, description="Folder id or slug to place the note in")


class NoteRefInput(BaseModel):
    """Input schema for tools acting on a single note."""

    note: str = Field(..., min_length=1, description="Note id or slug")


class UpdateNoteInput(BaseModel):
    """Input schema for update_note."""

    note: str = Field(..., min_length=1, description="Note id or slug")
    title: str | None = Field(default=None, min_length=1, max_length=200, description="New title")
    content: str | None = Field(default=None, max_length=MAX_NOTE_CHARS, description="New markdown body")
    append: bool = Field(default=False, description="Append content instead of replacing it")


class MoveNoteInput(BaseModel):
    """Input schema for move_note."""

    note: str = Field(..., min_length=1, description="Note id or slug")
    container: str | None = Field(default=None, description="Destination container id or slug")
    folder: str | None = Field(default=None, description="Destination folder id or slug")


async def resolve_existing(workspace: WorkspaceService, ref: str, user_id: str) -> Resource:
    """Resolve a reference the router has not already resolved."""
    resource_id = await workspace.resolve_ref(ref, user_id)
    if resource_id is None:
        raise ResourceNotFound(f"No resource matches '{ref}'")
    return await workspace.get(resource_id)


async def placement(
    workspace: WorkspaceService, user_id: str, target_id: str | None
) -> tuple[str, str | None]:
    """Container and parent folder for a new item placed on `target_id`."""
    if target_id is None:
        inbox = await workspace.default_container(user_id)
        return inbox.id, None

    target = await workspace.get(target_id)
    if target.kind == "folder":
        return target.container_id, target.id
    if target.kind == "container":
        return target.id, None
    raise ValueError(f"Cannot place an item inside a {target.kind}")


def create_create_note_tool(workspace: WorkspaceService) -> ToolDefinition:
    async def create_note_handler(args: CreateNoteInput, caller_id: str, resource_ref: str | None) -> ToolResult:
        container_id, folder_id = await placement(workspace, caller_id, resource_ref)
        note = await workspace.create(
            "note", caller_id, args.title, container_id=container_id, parent_id=folder_id, content=args.content
        )
        return ToolResult.ok(note.summary(), f"Created note '{note.name}' with id {note.id}")

    return ToolDefinition(
        name="create_note",
        description=(
            "Create a new note. Without a folder or container the note goes to the user's inbox. "
            "Returns the new note's id and slug."
        ),
        input_schema_class=CreateNoteInput,
        handler=create_note_handler,
        permission="write",
        resource_fields=("folder", "container"),
        group="notes",
    )


def create_get_note_tool(workspace: WorkspaceService) -> ToolDefinition:
    async def get_note_handler(args: NoteRefInput, caller_id: str, resource_ref: str | None) -> ToolResult:
        note = await workspace.get(resource_ref)
        if note.kind != "note":
            raise ResourceNotFound(f"'{args.note}' is a {note.kind}, not a note")
        return ToolResult.ok({**note.summary(), "content": note.content}, f"Read note '{note.name}'")

    return ToolDefinition(
        name="get_note",
        description="Read a note's title and markdown content by id or slug.",
        input_schema_class=NoteRefInput,
        handler=get_note_handler,
        permission="read",
        resource_fields=("note",),
        group="notes",
    )


def create_update_note_tool(workspace: WorkspaceService) -> ToolDefinition:
    async def update_note_handler(args: UpdateNoteInput, caller_id: str, resource_ref: str | None) -> ToolResult:
        if args.title is None and args.content is None:
            raise ValueError("Provide a new title or content")
        note = await workspace.update(resource_ref, name=args.title, content=args.content, append=args.append)
        return ToolResult.ok(note.summary(), f"Updated note '{note.name}'")

    return ToolDefinition(
        name="update_note",
        description="Change a note's title and/or content. Set append to add text at the end instead of replacing.",
        input_schema_class=UpdateNoteInput,
        handler=update_note_handler,
        permission="write",
        resource_fields=("note",),
        group="notes",
    )


def create_move_note_tool(workspace: WorkspaceService) -> ToolDefinition:
    async def move_note_handler(args: MoveNoteInput, caller_id: str, resource_ref: str | None) -> ToolResult:
        destination_ref = args.folder or args.container
        if destination_ref is None:
            raise ValueError("Provide a destination folder or container")

        destination = await resolve_existing(workspace, destination_ref, caller_id)
        await require_permission(workspace, caller_id, destination.id, "write")
        container_id, folder_id = await placement(workspace, caller_id, destination.id)

        note = await workspace.move(resource_ref, container_id, folder_id)
        return ToolResult.ok(note.summary(), f"Moved note '{note.name}' to {destination.kind} '{destination.name}'")

    return ToolDefinition(
        name="move_note",
        description="Move a note into another folder or container.",
        input_schema_class=MoveNoteInput,
        handler=move_note_handler,
        permission="write",
        resource_fields=("note",),
        group="notes",
    )


def create_delete_note_tool(workspace: WorkspaceService) -> ToolDefinition:
    async def delete_note_handler(args: NoteRefInput, caller_id: str, resource_ref: str | None) -> ToolResult:
        note = await workspace.get(resource_ref)
        await workspace.delete(note.id)
        return ToolResult.ok({"id": note.id, "deleted": True}, f"Deleted note '{note.name}'")

    return ToolDefinition(
        name="delete_note",
        description="Permanently delete a note. Only the owner may delete.",
        input_schema_class=NoteRefInput,
        handler=delete_note_handler,
        permission="owner",
        resource_fields=("note",),
        group="notes",
    )
