"""Workspace service interface and implementations.

The workspace is the data graph the tools act on: containers hold folders and
notes, folders may nest. Every call here is in-process; tools never go through
the application's own HTTP surface.
"""

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal, Protocol

from cuid2 import cuid_wrapper

from app.models.errors import PermissionDenied, ResourceNotFound
from app.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()

PermissionLevel = Literal["read", "write", "owner"]
ResourceKind = Literal["container", "folder", "note"]

_LEVEL_RANK: dict[str, int] = {"read": 1, "write": 2, "owner": 3}


@dataclass
class Resource:
    """Common fields of every workspace resource."""

    id: str
    kind: ResourceKind
    owner_id: str
    name: str
    slug: str
    container_id: str | None = None
    parent_id: str | None = None
    content: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def summary(self) -> dict[str, str | None]:
        data: dict[str, str | None] = {"id": self.id, "kind": self.kind, "name": self.name, "slug": self.slug}
        if self.container_id:
            data["container_id"] = self.container_id
        if self.parent_id:
            data["parent_id"] = self.parent_id
        return data


class WorkspaceService(Protocol):
    """Interface for the permission, resolver and mutation collaborators."""

    async def resolve_ref(self, ref: str, user_id: str) -> str | None:
        """Resolve an id or slug to a canonical resource id visible to the user."""
        ...

    async def has_permission(self, user_id: str, resource_id: str, level: PermissionLevel) -> bool:
        """Check whether the user holds at least `level` on the resource."""
        ...

    async def get(self, resource_id: str) -> Resource:
        """Fetch a resource by canonical id."""
        ...

    async def default_container(self, user_id: str) -> Resource:
        """Return the user's default container, creating it on first use."""
        ...

    async def create(
        self,
        kind: ResourceKind,
        owner_id: str,
        name: str,
        container_id: str | None = None,
        parent_id: str | None = None,
        content: str = "",
    ) -> Resource:
        """Create a resource."""
        ...

    async def update(
        self, resource_id: str, name: str | None = None, content: str | None = None, append: bool = False
    ) -> Resource:
        """Update a resource's name or content."""
        ...

    async def move(self, resource_id: str, container_id: str, parent_id: str | None) -> Resource:
        """Move a note or folder."""
        ...

    async def delete(self, resource_id: str) -> list[str]:
        """Delete a resource and everything below it, returning the deleted ids."""
        ...

    async def children(self, resource_id: str) -> list[Resource]:
        """List the direct children of a container or folder."""
        ...

    async def list_containers(self, user_id: str) -> list[Resource]:
        """List containers the user owns or has been granted access to."""
        ...


class InMemoryWorkspaceService:
    """In-memory workspace used for development and tests."""

    def __init__(self):
        self.resources: dict[str, Resource] = {}
        self.shares: dict[tuple[str, str], PermissionLevel] = {}

    async def resolve_ref(self, ref: str, user_id: str) -> str | None:
        """Resolve an id or slug, preferring the user's own resources for slugs."""
        ref = ref.strip()
        if ref in self.resources:
            return ref

        candidates = [resource for resource in self.resources.values() if resource.slug == ref]
        for resource in candidates:
            if resource.owner_id == user_id:
                return resource.id
        return candidates[0].id if candidates else None

    async def has_permission(self, user_id: str, resource_id: str, level: PermissionLevel) -> bool:
        """Owners hold every level; shares are inherited from the enclosing container."""
        resource = self.resources.get(resource_id)
        if resource is None:
            return False
        if resource.owner_id == user_id:
            return True

        required = _LEVEL_RANK[level]
        for scope_id in self._scopes(resource):
            granted = self.shares.get((scope_id, user_id))
            if granted and _LEVEL_RANK[granted] >= required:
                return True
        return False

    def share(self, resource_id: str, user_id: str, level: PermissionLevel) -> None:
        """Grant a user access to a resource and everything inside it."""
        self.shares[(resource_id, user_id)] = level

    async def get(self, resource_id: str) -> Resource:
        resource = self.resources.get(resource_id)
        if resource is None:
            raise ResourceNotFound(f"Resource {resource_id} does not exist")
        return resource

    async def default_container(self, user_id: str) -> Resource:
        for resource in self.resources.values():
            if resource.kind == "container" and resource.owner_id == user_id and resource.slug == "inbox":
                return resource
        return await self.create("container", user_id, "Inbox")

    async def create(
        self,
        kind: ResourceKind,
        owner_id: str,
        name: str,
        container_id: str | None = None,
        parent_id: str | None = None,
        content: str = "",
    ) -> Resource:
        if kind != "container" and container_id is None:
            raise ValueError(f"A {kind} must belong to a container")
        if parent_id is not None:
            parent = await self.get(parent_id)
            if parent.kind != "folder" or parent.container_id != container_id:
                raise ValueError("Parent must be a folder of the same container")

        resource = Resource(
            id=cuid(),
            kind=kind,
            owner_id=owner_id,
            name=name,
            slug=self._unique_slug(owner_id, name),
            container_id=container_id,
            parent_id=parent_id,
            content=content,
        )
        self.resources[resource.id] = resource
        logger.info(f"Created {kind} {resource.id} ({resource.slug}) for {owner_id}")
        return resource

    async def update(
        self, resource_id: str, name: str | None = None, content: str | None = None, append: bool = False
    ) -> Resource:
        resource = await self.get(resource_id)
        if name is not None:
            resource.name = name
        if content is not None:
            resource.content = f"{resource.content}{content}" if append else content
        resource.updated_at = datetime.now(UTC)
        return resource

    async def move(self, resource_id: str, container_id: str, parent_id: str | None) -> Resource:
        resource = await self.get(resource_id)
        if resource.kind == "container":
            raise ValueError("Containers cannot be moved")
        if parent_id is not None:
            parent = await self.get(parent_id)
            if parent.kind != "folder" or parent.container_id != container_id:
                raise ValueError("Destination must be a folder of the destination container")
            if resource.kind == "folder" and resource.id in self._scopes(parent):
                raise ValueError("A folder cannot be moved inside itself")

        moved = [resource, *self._descendants(resource.id)] if resource.kind == "folder" else [resource]
        for item in moved:
            item.container_id = container_id
        resource.parent_id = parent_id
        resource.updated_at = datetime.now(UTC)
        return resource

    async def delete(self, resource_id: str) -> list[str]:
        resource = await self.get(resource_id)
        doomed = [resource, *self._descendants(resource.id)]
        for item in doomed:
            self.resources.pop(item.id, None)
        logger.info(f"Deleted {resource.kind} {resource_id} and {len(doomed) - 1} descendants")
        return [item.id for item in doomed]

    async def children(self, resource_id: str) -> list[Resource]:
        resource = await self.get(resource_id)
        if resource.kind == "container":
            return [r for r in self.resources.values() if r.container_id == resource.id and r.parent_id is None]
        return [r for r in self.resources.values() if r.parent_id == resource.id]

    async def list_containers(self, user_id: str) -> list[Resource]:
        return [
            resource
            for resource in self.resources.values()
            if resource.kind == "container"
            and (resource.owner_id == user_id or (resource.id, user_id) in self.shares)
        ]

    def _scopes(self, resource: Resource) -> list[str]:
        """Ids of the resource and every folder/container enclosing it."""
        scopes = [resource.id]
        parent_id = resource.parent_id
        while parent_id is not None and parent_id in self.resources:
            scopes.append(parent_id)
            parent_id = self.resources[parent_id].parent_id
        if resource.container_id:
            scopes.append(resource.container_id)
        return scopes

    def _descendants(self, resource_id: str) -> list[Resource]:
        found: list[Resource] = []
        frontier = [resource_id]
        while frontier:
            current = frontier.pop()
            for resource in self.resources.values():
                if resource.parent_id == current or (
                    resource.container_id == current and resource.kind != "container"
                ):
                    if resource not in found:
                        found.append(resource)
                        frontier.append(resource.id)
        return found

    def _unique_slug(self, owner_id: str, name: str) -> str:
        base = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "untitled"
        taken = {r.slug for r in self.resources.values() if r.owner_id == owner_id}
        slug, suffix = base, 2
        while slug in taken:
            slug = f"{base}-{suffix}"
            suffix += 1
        return slug


async def require_permission(
    workspace: WorkspaceService, user_id: str, resource_id: str, level: PermissionLevel
) -> None:
    """Raise PermissionDenied unless the user holds `level` on the resource."""
    if not await workspace.has_permission(user_id, resource_id, level):
        raise PermissionDenied(f"You need {level} access to {resource_id}")
