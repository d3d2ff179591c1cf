"""Tool execution router: lookup, validation, permission check, invocation."""

import asyncio
from typing import Any

from pydantic import ValidationError

from app.models.errors import (
    HandlerException,
    OrchestrationError,
    PermissionDenied,
    ResourceNotFound,
    SchemaValidation,
    UnknownTool,
)
from app.models.messages import ToolCallRequest, ToolResult
from app.services.workspace import WorkspaceService
from app.tools.base import ToolDefinition
from app.tools.registry import ToolsRegistry
from app.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_RESULT_BYTES = 16_384


class ToolExecutionRouter:
    """Runs one tool call in-process and normalizes the outcome.

    Every tool-level failure comes back as a `ToolResult` with
    `success=False`; nothing raised by a handler escapes except cancellation.
    """

    def __init__(
        self,
        registry: ToolsRegistry,
        workspace: WorkspaceService,
        max_result_bytes: int = DEFAULT_MAX_RESULT_BYTES,
        allowed_tools: set[str] | None = None,
    ):
        self.registry = registry
        self.workspace = workspace
        self.max_result_bytes = max_result_bytes
        self.allowed_tools = allowed_tools

    async def execute(
        self,
        call: ToolCallRequest,
        arguments: dict[str, Any],
        caller_id: str,
        resource_ref: str | None = None,
    ) -> ToolResult:
        """Execute a tool call whose arguments were already repaired.

        Args:
            call: The tool call as requested by the model
            arguments: Repaired argument object
            caller_id: Identity of the acting user
            resource_ref: Target resource reference; read from the arguments
                when omitted

        Returns:
            The normalized tool result
        """
        try:
            tool = self._lookup(call.name)
            parsed = self._validate(tool, arguments)
            target_id = await self._authorize(tool, parsed, caller_id, resource_ref)
        except OrchestrationError as e:
            logger.warning(f"Tool call {call.id} ({call.name}) rejected: {e}")
            return ToolResult.failure(str(e), e.error_type)

        logger.info(f"Executing tool {tool.name} for {caller_id} (call {call.id}, target {target_id})")
        try:
            outcome = await self._invoke(tool, parsed, caller_id, target_id, call)
        except PermissionDenied as e:
            logger.warning(f"Tool {tool.name} refused for {caller_id}: {e}")
            return ToolResult.failure(str(e), e.error_type)
        except ResourceNotFound as e:
            return ToolResult.failure(str(e), e.error_type)
        except Exception as e:
            logger.error(f"Tool {tool.name} raised: {e}", exc_info=True)
            error = HandlerException(f"{tool.name} failed: {e}")
            return ToolResult.failure(str(error), error.error_type)

        result = outcome if isinstance(outcome, ToolResult) else ToolResult.ok(outcome, f"{tool.name} succeeded")
        return self._limit_size(tool.name, result)

    def _lookup(self, name: str) -> ToolDefinition:
        if self.allowed_tools is not None and name not in self.allowed_tools:
            raise UnknownTool(name)
        return self.registry.get(name)

    def _validate(self, tool: ToolDefinition, arguments: dict[str, Any]):
        try:
            return tool.parse_input(arguments)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or "arguments"
            raise SchemaValidation(tool.name, field, first["msg"]) from e

    async def _authorize(
        self, tool: ToolDefinition, parsed, caller_id: str, resource_ref: str | None
    ) -> str | None:
        """Resolve the target reference and check the caller's permission on it.

        Calls without a target act in the caller's own namespace and need no check.
        """
        ref = resource_ref or tool.target_ref(parsed)
        if ref is None:
            return None

        target_id = await self.workspace.resolve_ref(ref, caller_id)
        if target_id is None:
            raise ResourceNotFound(f"No resource matches '{ref}'")

        if not await self.workspace.has_permission(caller_id, target_id, tool.permission):
            raise PermissionDenied(f"You need {tool.permission} access to '{ref}' to use {tool.name}")
        return target_id

    async def _invoke(self, tool: ToolDefinition, parsed, caller_id: str, target_id: str | None, call):
        """Await the handler, letting it finish if the turn is cancelled meanwhile."""
        task = asyncio.ensure_future(tool.handler(parsed, caller_id, target_id))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(f"Turn cancelled while {tool.name} (call {call.id}) was running, discarding its result")
            task.add_done_callback(lambda done: _log_discarded(tool.name, call.id, done))
            raise

    def _limit_size(self, tool_name: str, result: ToolResult) -> ToolResult:
        if not result.success:
            return result

        size = len(result.to_content().encode("utf-8"))
        if size <= self.max_result_bytes:
            return result

        logger.warning(
            f"OversizedResult: {tool_name} returned {size} bytes, ceiling is {self.max_result_bytes}; truncating"
        )
        return ToolResult(
            success=True,
            data={
                "truncated": True,
                "original_size": size,
                "message": f"Result truncated, original size {size} bytes",
            },
            human_message=f"{result.human_message} (result truncated, original size {size} bytes)",
            truncated=True,
        )


def _log_discarded(tool_name: str, call_id: str, task: asyncio.Future) -> None:
    if task.cancelled():
        logger.warning(f"Discarded tool {tool_name} (call {call_id}) was itself cancelled")
    elif task.exception() is not None:
        logger.warning(f"Discarded tool {tool_name} (call {call_id}) failed: {task.exception()}")
    else:
        logger.info(f"Discarded result of {tool_name} (call {call_id}) after cancellation")


def summarize(result: ToolResult, limit: int = 160) -> str:
    """Short one-line summary of a result for status events."""
    text = result.human_message
    if len(text) > limit:
        text = f"{text[: limit - 3]}..."
    return text
