"""Error taxonomy for the orchestration engine."""


class OrchestrationError(Exception):
    """Base class for every error raised by the orchestration engine."""

    @property
    def error_type(self) -> str:
        """Class name used as the stable error identifier on the wire."""
        return type(self).__name__


class MalformedArguments(OrchestrationError):
    """Tool-call arguments could not be repaired into an object."""

    def __init__(self, raw: str):
        self.raw = raw
        preview = raw if len(raw) <= 120 else f"{raw[:120]}..."
        super().__init__(f"Could not parse tool arguments: {preview!r}")


class UnknownTool(OrchestrationError):
    """The model requested a tool that is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool '{name}'")


class SchemaValidation(OrchestrationError):
    """Arguments do not match the tool's declared parameter schema."""

    def __init__(self, tool_name: str, field: str, reason: str):
        self.tool_name = tool_name
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid argument '{field}' for {tool_name}: {reason}")


class PermissionDenied(OrchestrationError):
    """The caller lacks the permission level a tool requires on a resource."""


class ResourceNotFound(OrchestrationError):
    """A resource reference does not resolve for the caller."""


class HandlerException(OrchestrationError):
    """An internal tool handler raised."""


class ProviderTransportError(OrchestrationError):
    """The LLM provider could not be reached or aborted the stream."""

    def __init__(self, message: str, status_code: int | None = None, provider: str | None = None):
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


class InvalidMessageSequence(OrchestrationError):
    """A history invariant was violated. Always fatal to the turn."""


class SessionBusyError(OrchestrationError):
    """A turn is already running for the session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"A turn is already in progress for session {session_id}")
