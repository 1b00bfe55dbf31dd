"""Shared fixtures: stubbed sandbox provider and repository client."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

import pytest
import respx

from roseram.services.github import Credential
from roseram.services.preview_manager import PreviewManager, PreviewRegistry
from roseram.services.sandbox import DevServerInfo, SandboxHandle
from roseram.services.setup_session import InMemorySetupSessionStore, SetupSessionService

if TYPE_CHECKING:
    from collections.abc import Generator


def _handle_for(name: str, **kwargs) -> SandboxHandle:
    return SandboxHandle(name=name, id=f"machine-{name}", region=kwargs.get("region", "ord"))


@pytest.fixture
def sandbox_client() -> MagicMock:
    """Sandbox provider that succeeds at everything."""
    client = MagicMock()
    client.provider = "fake"
    client.create_sandbox = AsyncMock(side_effect=_handle_for)
    client.clone_and_run = AsyncMock(return_value=DevServerInfo(port=3000, process_id=1234))
    client.destroy_sandbox = AsyncMock(return_value=None)
    client.fetch_logs = AsyncMock(return_value="ready - started server on http://localhost:3000")
    client.get_status = AsyncMock(return_value={"machine_state": "started", "deployed": True})
    return client


@pytest.fixture
def repo_client() -> MagicMock:
    """Repository client for a public npm project ``octo/demo``."""
    client = MagicMock()
    client.credential = Credential("ghp_test")
    client.file_exists = AsyncMock(return_value=False)
    client.get_repository = AsyncMock(
        return_value={
            "full_name": "octo/demo",
            "html_url": "https://github.com/octo/demo",
            "default_branch": "main",
            "private": False,
        }
    )
    client.get_branch = AsyncMock(return_value={"name": "main"})
    return client


@pytest.fixture
def registry() -> PreviewRegistry:
    return PreviewRegistry()


@pytest.fixture
def preview_manager(sandbox_client: MagicMock, registry: PreviewRegistry) -> PreviewManager:
    return PreviewManager(sandbox_client=sandbox_client, registry=registry, preview_domain="fly.dev")


@pytest.fixture
def setup_service(sandbox_client: MagicMock, repo_client: MagicMock) -> SetupSessionService:
    return SetupSessionService(
        store=InMemorySetupSessionStore(),
        sandbox_client=sandbox_client,
        repo_client_factory=lambda credential: repo_client,
        preview_domain="fly.dev",
    )


@pytest.fixture
def mock_http() -> Generator[respx.MockRouter, None, None]:
    """Route table for outgoing httpx calls; unmatched requests fail the test."""
    with respx.mock(assert_all_called=False) as router:
        yield router
