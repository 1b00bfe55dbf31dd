"""Tests for the GitHub repository client."""

from __future__ import annotations

import base64

import httpx
import pytest

from roseram.errors import ExternalServiceError, NotFoundError, ValidationError
from roseram.services.github import Credential, GitHubClient, parse_repo_url

API = "https://api.github.test"


@pytest.fixture
def github() -> GitHubClient:
    return GitHubClient(Credential("ghp_test"), api_url=API)


class TestParseRepoUrl:
    @pytest.mark.parametrize(
        "value",
        [
            "https://github.com/octo/demo",
            "https://github.com/octo/demo.git",
            "https://github.com/octo/demo/",
            "octo/demo",
        ],
    )
    def test_accepted_forms(self, value: str) -> None:
        assert parse_repo_url(value) == ("octo", "demo")

    @pytest.mark.parametrize("value", ["", "demo", "https://"])
    def test_rejected_forms(self, value: str) -> None:
        with pytest.raises(ValidationError):
            parse_repo_url(value)


class TestCredential:
    def test_repr_hides_token(self) -> None:
        assert "ghp_test" not in repr(Credential("ghp_test"))


class TestGitHubClient:
    @pytest.mark.asyncio
    async def test_file_exists(self, github: GitHubClient, mock_http) -> None:
        route = mock_http.get(f"{API}/repos/octo/demo/contents/yarn.lock").mock(
            return_value=httpx.Response(200, json={"type": "file"})
        )
        mock_http.get(f"{API}/repos/octo/demo/contents/pnpm-lock.yaml").mock(return_value=httpx.Response(404))

        assert await github.file_exists("octo", "demo", "yarn.lock", "main") is True
        assert await github.file_exists("octo", "demo", "pnpm-lock.yaml", "main") is False

        request = route.calls.last.request
        assert request.url.params["ref"] == "main"
        assert request.headers["Authorization"] == "Bearer ghp_test"

    @pytest.mark.asyncio
    async def test_file_exists_server_error(self, github: GitHubClient, mock_http) -> None:
        mock_http.get(f"{API}/repos/octo/demo/contents/yarn.lock").mock(return_value=httpx.Response(500))

        with pytest.raises(ExternalServiceError):
            await github.file_exists("octo", "demo", "yarn.lock", "main")

    @pytest.mark.asyncio
    async def test_get_file_content_decodes_base64(self, github: GitHubClient, mock_http) -> None:
        encoded = base64.b64encode(b'{"name": "demo"}').decode()
        mock_http.get(f"{API}/repos/octo/demo/contents/package.json").mock(
            return_value=httpx.Response(200, json={"content": encoded, "encoding": "base64"})
        )
        mock_http.get(f"{API}/repos/octo/demo/contents/missing.txt").mock(return_value=httpx.Response(404))

        assert await github.get_file_content("octo", "demo", "package.json", "main") == '{"name": "demo"}'
        assert await github.get_file_content("octo", "demo", "missing.txt", "main") is None

    @pytest.mark.asyncio
    async def test_missing_repository(self, github: GitHubClient, mock_http) -> None:
        mock_http.get(f"{API}/repos/octo/nope").mock(return_value=httpx.Response(404))

        with pytest.raises(NotFoundError) as exc_info:
            await github.get_repository("octo", "nope")

        assert exc_info.value.message == "Repository not found"

    @pytest.mark.asyncio
    async def test_access_denied(self, github: GitHubClient, mock_http) -> None:
        mock_http.get(f"{API}/repos/octo/private/branches/main").mock(return_value=httpx.Response(403))

        with pytest.raises(ExternalServiceError) as exc_info:
            await github.get_branch("octo", "private", "main")

        assert exc_info.value.details == {"statusCode": 403}

    @pytest.mark.asyncio
    async def test_network_failure(self, github: GitHubClient, mock_http) -> None:
        mock_http.get(f"{API}/repos/octo/demo").mock(side_effect=httpx.ConnectError("connection refused"))

        with pytest.raises(ExternalServiceError):
            await github.get_repository("octo", "demo")

    @pytest.mark.asyncio
    async def test_repository_structure(self, github: GitHubClient, mock_http) -> None:
        mock_http.get(f"{API}/repos/octo/demo/git/trees/main").mock(
            return_value=httpx.Response(
                200,
                json={
                    "truncated": False,
                    "tree": [
                        {"path": "src", "type": "tree", "sha": "a1"},
                        {"path": "src/index.js", "type": "blob", "sha": "b2"},
                    ],
                },
            )
        )

        assert await github.get_repository_structure("octo", "demo", "main") == [
            {"path": "src", "type": "dir", "sha": "a1"},
            {"path": "src/index.js", "type": "file", "sha": "b2"},
        ]

    @pytest.mark.asyncio
    async def test_unauthenticated_client_sends_no_token(self, mock_http) -> None:
        route = mock_http.get(f"{API}/repos/octo/demo").mock(return_value=httpx.Response(200, json={}))

        await GitHubClient(api_url=API).get_repository("octo", "demo")

        assert "Authorization" not in route.calls.last.request.headers
