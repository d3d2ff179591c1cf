"""Shared fixtures for the orchestration tests."""

from collections.abc import Callable
from typing import Any

import pytest

from app.graphs.conversation import OrchestrationLoop
from app.models.agent import AgentConfig, OrchestratorSettings
from app.models.session import Session
from app.services.broadcaster import RealtimeBroadcaster
from app.services.persistence import InMemoryMessageStore
from app.services.session_manager import InMemorySessionManager
from app.services.workspace import InMemoryWorkspaceService
from app.tools.registry import ToolsRegistry
from tests.fakes import RecordingTransport, ScriptedProvider


@pytest.fixture
def workspace() -> InMemoryWorkspaceService:
    return InMemoryWorkspaceService()


@pytest.fixture
def registry(workspace) -> ToolsRegistry:
    return ToolsRegistry(workspace)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def broadcaster(transport) -> RealtimeBroadcaster:
    return RealtimeBroadcaster(transport, timeout=0.5)


@pytest.fixture
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def settings() -> OrchestratorSettings:
    return OrchestratorSettings(provider_retry_delay=0.0, history_limit=30)


@pytest.fixture
def session_manager() -> InMemorySessionManager:
    return InMemorySessionManager()


@pytest.fixture
def session(session_manager) -> Session:
    return session_manager.create_session("alice", AgentConfig())


@pytest.fixture
def make_loop(registry, workspace, store, broadcaster, settings) -> Callable[..., OrchestrationLoop]:
    """Factory building an orchestration loop around a scripted provider."""

    def _make(provider: ScriptedProvider, **overrides: Any) -> OrchestrationLoop:
        return OrchestrationLoop(
            provider=provider,
            registry=registry,
            workspace=workspace,
            persistence=overrides.get("persistence", store),
            broadcaster=broadcaster,
            settings=overrides.get("settings", settings),
        )

    return _make
