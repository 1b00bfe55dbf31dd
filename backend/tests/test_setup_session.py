"""Tests for the four-step machine setup workflow."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from roseram.errors import NotFoundError, PreconditionError, SetupTimeoutError, ValidationError
from roseram.services.sandbox import FLY_GRAPHQL_URL, DevServerInfo, FlyMachinesClient
from roseram.services.setup_session import (
    InMemorySetupSessionStore,
    MachineAllocated,
    MachineBooted,
    MachineConfigured,
    RepositoryDetected,
    SetupSession,
    SetupSessionService,
    StepFailed,
    calculate_progress,
    can_execute_step,
    format_duration,
    generate_app_name,
    get_next_step,
    get_step_description,
    is_setup_complete,
)

T0 = 1_700_000_000_000


class TestHelpers:
    def test_calculate_progress(self) -> None:
        assert calculate_progress([]) == 0
        assert calculate_progress([1]) == 25
        assert calculate_progress([1, 2]) == 50
        assert calculate_progress([1, 2, 3, 4]) == 100

    def test_format_duration_from_epoch_ms(self) -> None:
        assert format_duration(T0, T0 + 45_000) == "45s"
        assert format_duration(T0, T0 + 65_000) == "1m 5s"
        assert format_duration(T0, T0 + (2 * 3600 + 3 * 60 + 59) * 1000) == "2h 3m"

    def test_format_duration_from_datetimes_and_strings(self) -> None:
        start = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert format_duration(start, start + timedelta(seconds=59.9)) == "59s"
        assert format_duration("2024-05-01T12:00:00Z", "2024-05-01T12:10:00+00:00") == "10m 0s"

    def test_format_duration_without_end_uses_now(self) -> None:
        start = datetime.now(timezone.utc) - timedelta(seconds=5)
        assert re.match(r"^\d+s$", format_duration(start))

    def test_can_execute_step(self) -> None:
        assert can_execute_step(1, [])
        assert can_execute_step(1, [1, 2, 3])
        assert can_execute_step(2, [1])
        assert not can_execute_step(3, [1])
        assert not can_execute_step(3, [2])
        assert can_execute_step(4, [1, 2, 3])

    def test_get_next_step(self) -> None:
        assert get_next_step([]) == 1
        assert get_next_step([1, 2]) == 3
        assert get_next_step([2]) == 1
        assert get_next_step([1, 2, 3, 4]) == 4

    def test_is_setup_complete(self) -> None:
        assert is_setup_complete([4, 2, 3, 1])
        assert not is_setup_complete([1, 2, 3])

    def test_step_descriptions(self) -> None:
        assert get_step_description(1) == "Detecting and validating your GitHub repository"
        assert get_step_description(9) == "Unknown step"

    def test_app_name_is_stable_per_user_and_project(self) -> None:
        name = generate_app_name("user-1", "proj-1")
        assert re.match(r"^roseram-[0-9a-f]{8}$", name)
        assert generate_app_name("user-1", "proj-1") == name
        assert generate_app_name("user-2", "proj-1") != name


class TestSessionRows:
    def test_from_row_normalises_database_shapes(self) -> None:
        session = SetupSession.from_row(
            {
                "id": "s-1",
                "project_id": "proj-1",
                "user_id": "user-1",
                "github_repo_url": "https://github.com/octo/demo",
                "github_branch": "main",
                "github_owner": "octo",
                "github_repo_name": "demo",
                "fly_app_name": "roseram-abcdef12",
                "preview_url": "https://roseram-abcdef12.fly.dev",
                "current_step": 3,
                "completed_steps": [2, 1, 2],
                "overall_status": "in_progress",
                "step_details": {"1": {"status": "completed"}},
                "created_at": "2024-05-01T12:00:00Z",
                "completed_at": None,
                "started_at": "2024-05-01T12:00:00Z",
            }
        )
        assert session.completed_steps == [1, 2]
        assert session.step_details == {1: {"status": "completed"}}
        assert session.created_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_creates_fresh_session(self, setup_service: SetupSessionService) -> None:
        session = await setup_service.initialize_setup_session(
            "proj-1", "https://github.com/octo/demo.git", "main", user_id="user-1"
        )

        assert session.current_step == 1
        assert session.completed_steps == []
        assert session.overall_status == "in_progress"
        assert session.github_owner == "octo"
        assert session.github_repo_name == "demo"
        assert session.fly_app_name == generate_app_name("user-1", "proj-1")
        assert session.preview_url == f"https://{session.fly_app_name}.fly.dev"

    @pytest.mark.asyncio
    async def test_resumes_in_progress_session(self, setup_service: SetupSessionService) -> None:
        first = await setup_service.initialize_setup_session("proj-1", "octo/demo", user_id="user-1")
        again = await setup_service.initialize_setup_session("proj-1", "octo/demo", user_id="user-1")
        other_user = await setup_service.initialize_setup_session("proj-1", "octo/demo", user_id="user-2")

        assert again.id == first.id
        assert other_user.id != first.id

    @pytest.mark.asyncio
    async def test_invalid_repository_url(self, setup_service: SetupSessionService) -> None:
        with pytest.raises(ValidationError):
            await setup_service.initialize_setup_session("proj-1", "not-a-repo", user_id="user-1")

    @pytest.mark.asyncio
    async def test_unknown_session(self, setup_service: SetupSessionService) -> None:
        with pytest.raises(NotFoundError):
            await setup_service.get_setup_session("missing")


class TestExecuteStep:
    @pytest_asyncio.fixture
    async def session(self, setup_service: SetupSessionService) -> SetupSession:
        return await setup_service.initialize_setup_session("proj-1", "octo/demo", user_id="user-1")

    @pytest.mark.asyncio
    async def test_step_three_requires_one_and_two(
        self, setup_service: SetupSessionService, session: SetupSession
    ) -> None:
        with pytest.raises(PreconditionError):
            await setup_service.execute_setup_step(session.id, 3)

        await setup_service.execute_setup_step(session.id, 1)
        with pytest.raises(PreconditionError):
            await setup_service.execute_setup_step(session.id, 3)

    @pytest.mark.asyncio
    async def test_step_one_always_allowed(self, setup_service: SetupSessionService, session: SetupSession) -> None:
        await setup_service.execute_setup_step(session.id, 1)
        updated, result = await setup_service.execute_setup_step(session.id, 1)

        assert isinstance(result, RepositoryDetected)
        assert updated.completed_steps == [1]

    @pytest.mark.asyncio
    async def test_invalid_step_number(self, setup_service: SetupSessionService, session: SetupSession) -> None:
        with pytest.raises(ValidationError):
            await setup_service.execute_setup_step(session.id, 5)

    @pytest.mark.asyncio
    async def test_full_run(
        self,
        setup_service: SetupSessionService,
        session: SetupSession,
        repo_client: MagicMock,
        sandbox_client: MagicMock,
    ) -> None:
        repo_client.file_exists = AsyncMock(side_effect=lambda owner, repo, path, ref: path == "yarn.lock")

        _, detected = await setup_service.execute_setup_step(session.id, 1, "ghp_user")
        assert isinstance(detected, RepositoryDetected)
        assert detected.package_manager == "yarn"
        assert detected.repository_name == "octo/demo"

        updated, allocated = await setup_service.execute_setup_step(session.id, 2)
        assert isinstance(allocated, MachineAllocated)
        assert allocated.app_name == session.fly_app_name
        assert updated.sandbox_id == f"machine-{session.fly_app_name}"
        assert updated.current_step == 3
        assert calculate_progress(updated.completed_steps) == 50

        _, configured = await setup_service.execute_setup_step(session.id, 3)
        assert isinstance(configured, MachineConfigured)
        assert configured.environment["PORT"] == "3000"

        updated, booted = await setup_service.execute_setup_step(session.id, 4, "ghp_user")
        assert isinstance(booted, MachineBooted)
        assert booted.preview_url == session.preview_url
        assert booted.port == 3000

        kwargs = sandbox_client.clone_and_run.call_args.kwargs
        assert kwargs["package_manager"] == "yarn"
        assert kwargs["auth_token"] == "ghp_user"

        assert updated.overall_status == "completed"
        assert updated.completed_steps == [1, 2, 3, 4]
        assert updated.current_step == 4
        assert updated.completed_at is not None
        assert updated.to_dict()["progress"] == 100

    @pytest.mark.asyncio
    async def test_failed_step_keeps_progress_and_can_be_retried(
        self,
        setup_service: SetupSessionService,
        session: SetupSession,
        sandbox_client: MagicMock,
    ) -> None:
        for step in (1, 2, 3):
            await setup_service.execute_setup_step(session.id, step)
        sandbox_client.clone_and_run.side_effect = SetupTimeoutError("Dev server did not open a port within 120s")

        failed, result = await setup_service.execute_setup_step(session.id, 4)

        assert isinstance(result, StepFailed)
        assert result.step == 4
        assert failed.overall_status == "failed"
        assert failed.error_step == 4
        assert "did not open a port" in failed.error_message
        assert failed.completed_steps == [1, 2, 3]

        sandbox_client.clone_and_run.side_effect = None
        sandbox_client.clone_and_run.return_value = DevServerInfo(port=3000, process_id=77)
        done, result = await setup_service.execute_setup_step(session.id, 4)

        assert isinstance(result, MachineBooted)
        assert done.overall_status == "completed"
        assert done.error_step is None
        assert sandbox_client.create_sandbox.await_count == 1

    @pytest.mark.asyncio
    async def test_step_two_retry_after_app_was_created(self, repo_client: MagicMock, mock_http) -> None:
        api = "https://api.machines.test/v1"
        service = SetupSessionService(
            store=InMemorySetupSessionStore(),
            sandbox_client=FlyMachinesClient(token="fly-test", api_url=api),
            repo_client_factory=lambda credential: repo_client,
            preview_domain="fly.dev",
        )
        session = await service.initialize_setup_session("proj-1", "octo/demo", user_id="user-1")
        name = session.fly_app_name
        mock_http.post(f"{api}/apps").mock(
            side_effect=[
                httpx.Response(201, json={}),
                httpx.Response(422, json={"error": f"app {name} already exists"}),
            ]
        )
        mock_http.get(f"{api}/apps/{name}/machines").mock(return_value=httpx.Response(200, json=[]))
        mock_http.post(f"{api}/apps/{name}/machines").mock(
            side_effect=[
                httpx.Response(500, json={"error": "no capacity in ord"}),
                httpx.Response(200, json={"id": "m-1", "region": "ord", "state": "created"}),
            ]
        )
        mock_http.get(f"{api}/apps/{name}/machines/m-1/wait").mock(return_value=httpx.Response(200, json={}))
        mock_http.post(FLY_GRAPHQL_URL).mock(return_value=httpx.Response(200, json={"data": {}}))

        await service.execute_setup_step(session.id, 1)
        failed, result = await service.execute_setup_step(session.id, 2)
        assert isinstance(result, StepFailed)
        assert failed.error_step == 2

        retried, result = await service.execute_setup_step(session.id, 2)

        assert isinstance(result, MachineAllocated)
        assert result.sandbox_id == "m-1"
        assert retried.overall_status == "in_progress"
        assert retried.completed_steps == [1, 2]

    @pytest.mark.asyncio
    async def test_repository_errors_fail_step_one(
        self, setup_service: SetupSessionService, session: SetupSession, repo_client: MagicMock
    ) -> None:
        repo_client.get_repository.side_effect = NotFoundError("Repository")

        failed, result = await setup_service.execute_setup_step(session.id, 1)

        assert isinstance(result, StepFailed)
        assert result.error == "Repository not found"
        assert failed.error_step == 1
        assert failed.completed_steps == []

    @pytest.mark.asyncio
    async def test_completed_session_rejects_steps(
        self, setup_service: SetupSessionService, session: SetupSession
    ) -> None:
        for step in (1, 2, 3, 4):
            await setup_service.execute_setup_step(session.id, step)

        with pytest.raises(PreconditionError):
            await setup_service.execute_setup_step(session.id, 1)

    @pytest.mark.asyncio
    async def test_cancelled_session_rejects_steps(
        self, setup_service: SetupSessionService, session: SetupSession
    ) -> None:
        cancelled = await setup_service.cancel_setup_session(session.id)
        assert cancelled.overall_status == "cancelled"

        with pytest.raises(PreconditionError):
            await setup_service.execute_setup_step(session.id, 1)

        fresh = await setup_service.initialize_setup_session("proj-1", "octo/demo", user_id="user-1")
        assert fresh.id != session.id
