import os
import base64
import logging
from dataclasses import dataclass

import httpx

from roseram.errors import ExternalServiceError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")


@dataclass(frozen=True)
class Credential:
    """A bearer token for the repository host."""

    token: str

    def __repr__(self) -> str:
        return "Credential(token=***)"


def parse_repo_url(github_repo: str) -> tuple[str, str]:
    """Split ``https://github.com/owner/repo(.git)`` or ``owner/repo`` into its parts."""
    cleaned = (github_repo or "").strip().rstrip("/")
    if cleaned.endswith(".git"):
        cleaned = cleaned[:-4]
    parts = [p for p in cleaned.split("/") if p]
    if len(parts) < 2:
        raise ValidationError("Invalid GitHub repository URL", {"githubRepo": github_repo})
    owner, repo = parts[-2], parts[-1]
    if owner.endswith(":") or ":" in repo:
        raise ValidationError("Invalid GitHub repository URL", {"githubRepo": github_repo})
    return owner, repo


def repo_clone_url(owner: str, repo: str) -> str:
    return f"https://github.com/{owner}/{repo}.git"


class GitHubClient:
    """Thin async client for the GitHub REST endpoints the preview flow needs."""

    def __init__(self, credential: Credential | None = None, api_url: str = GITHUB_API_URL, timeout: float = 30.0):
        self.credential = credential
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def _headers(self) -> dict:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.credential:
            headers["Authorization"] = f"Bearer {self.credential.token}"
        return headers

    async def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.get(f"{self.api_url}{path}", params=params, headers=self._headers())
        except httpx.HTTPError as e:
            raise ExternalServiceError("GitHub", f"GitHub request failed: {e}") from e

    def _raise_for_status(self, resp: httpx.Response, what: str):
        if resp.status_code == 404:
            raise NotFoundError(what)
        if resp.status_code in (401, 403):
            raise ExternalServiceError(
                "GitHub",
                f"GitHub denied access to {what.lower()} ({resp.status_code})",
                {"statusCode": resp.status_code},
            )
        if resp.status_code >= 400:
            raise ExternalServiceError(
                "GitHub",
                f"GitHub API error: {resp.status_code}",
                {"statusCode": resp.status_code, "body": resp.text[:500]},
            )

    async def get_repository(self, owner: str, repo: str) -> dict:
        resp = await self._get(f"/repos/{owner}/{repo}")
        self._raise_for_status(resp, "Repository")
        return resp.json()

    async def get_branch(self, owner: str, repo: str, branch: str) -> dict:
        resp = await self._get(f"/repos/{owner}/{repo}/branches/{branch}")
        self._raise_for_status(resp, "Branch")
        return resp.json()

    async def file_exists(self, owner: str, repo: str, path: str, ref: str) -> bool:
        resp = await self._get(f"/repos/{owner}/{repo}/contents/{path}", params={"ref": ref})
        if resp.status_code == 404:
            return False
        self._raise_for_status(resp, "File")
        return True

    async def get_file_content(self, owner: str, repo: str, path: str, ref: str) -> str | None:
        """Decoded file text, or None when the file does not exist."""
        resp = await self._get(f"/repos/{owner}/{repo}/contents/{path}", params={"ref": ref})
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, "File")
        data = resp.json()
        if isinstance(data, list):
            # a directory listing, not a file
            return None
        content = data.get("content") or ""
        if data.get("encoding") == "base64":
            return base64.b64decode(content).decode("utf-8", errors="replace")
        return content

    async def get_repository_structure(self, owner: str, repo: str, ref: str) -> list[dict]:
        """Flat list of ``{"path", "type", "sha"}`` for every entry on ``ref``."""
        resp = await self._get(f"/repos/{owner}/{repo}/git/trees/{ref}", params={"recursive": "1"})
        self._raise_for_status(resp, "Repository tree")
        data = resp.json()
        tree = data.get("tree", [])
        if data.get("truncated"):
            logger.warning(f"[github] Tree for {owner}/{repo}@{ref} was truncated ({len(tree)} entries)")
        return [
            {
                "path": item.get("path"),
                "type": "file" if item.get("type") == "blob" else "dir",
                "sha": item.get("sha"),
            }
            for item in tree
        ]
