"""Automated previews: sandbox -> clone -> install -> dev server -> public URL.

Provisioning is a straight sequence of awaited calls. There is no retry and no
compensation: a sandbox created before a later step fails stays allocated
until somebody calls ``destroy_preview`` or destroys it by name.
"""

import os
import time
import string
import secrets
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone

from roseram.errors import ConflictError, PreviewCreationError, ValidationError
from roseram.services.github import Credential, repo_clone_url
from roseram.services.package_manager import detect_package_manager
from roseram.services.sandbox import MAX_SANDBOX_NAME_LENGTH, SandboxClient, get_sandbox_client

logger = logging.getLogger(__name__)

PREVIEW_DOMAIN = os.getenv("PREVIEW_DOMAIN", "fly.dev")
DEFAULT_BOOT_TIMEOUT_MS = 120_000

_NAME_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class PreviewOptions:
    region: str = "ord"
    ram_mb: int = 1024
    cpus: int = 1
    timeout_ms: int = DEFAULT_BOOT_TIMEOUT_MS
    script_name: str = "dev"
    credential: Credential | None = None
    port_patterns: list[str] | None = None


@dataclass
class PreviewInstance:
    project_id: str
    owner: str
    repo: str
    branch: str
    sandbox_name: str
    sandbox_id: str
    port: int
    process_id: int | None
    preview_url: str
    package_manager: str = "npm"
    script_name: str = "dev"
    status: str = "running"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def uptime_ms(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        return int((now - self.created_at).total_seconds() * 1000)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class PreviewRegistry:
    """In-process store of previews keyed by project id.

    Lost on restart and not shared between server processes. Swap in another
    implementation with the same four methods for multi-instance deployments.
    """

    def __init__(self):
        self._previews: dict[str, PreviewInstance] = {}

    def get(self, project_id: str) -> PreviewInstance | None:
        return self._previews.get(project_id)

    def put(self, instance: PreviewInstance) -> None:
        self._previews[instance.project_id] = instance

    def remove(self, project_id: str) -> PreviewInstance | None:
        return self._previews.pop(project_id, None)

    def values(self) -> list[PreviewInstance]:
        return list(self._previews.values())


def generate_sandbox_name(now_ms: int | None = None) -> str:
    """``p-{6 random base36 chars}-{last 5 digits of epoch ms}``."""
    random_part = "".join(secrets.choice(_NAME_ALPHABET) for _ in range(6))
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    timestamp = str(now_ms)[-5:].rjust(5, "0")
    return f"p-{random_part}-{timestamp}"


class PreviewManager:
    def __init__(
        self,
        sandbox_client: SandboxClient | None = None,
        registry: PreviewRegistry | None = None,
        preview_domain: str = PREVIEW_DOMAIN,
    ):
        self._sandbox_client = sandbox_client
        self.registry = registry if registry is not None else PreviewRegistry()
        self.preview_domain = preview_domain
        self._in_flight: set[str] = set()

    @property
    def sandbox_client(self) -> SandboxClient:
        if self._sandbox_client is None:
            self._sandbox_client = get_sandbox_client()
        return self._sandbox_client

    def preview_url_for(self, sandbox_name: str) -> str:
        return f"https://{sandbox_name}.{self.preview_domain}"

    async def create_preview(
        self,
        repo_client,
        project_id: str,
        owner: str,
        repo: str,
        branch: str = "main",
        options: PreviewOptions | None = None,
    ) -> PreviewInstance:
        """Provision a running preview for ``owner/repo@branch``.

        The instance is registered only after the dev server reports a port.
        Any failure after name generation raises ``PreviewCreationError``.
        """
        options = options or PreviewOptions()
        if not project_id or not owner or not repo:
            raise ValidationError("projectId, owner, and repo are required")
        if project_id in self._in_flight:
            raise ConflictError(f"A preview for project {project_id} is already being created")

        sandbox_name = generate_sandbox_name()
        if len(sandbox_name) > MAX_SANDBOX_NAME_LENGTH:
            raise ValidationError(f"Sandbox name too long ({len(sandbox_name)} chars): {sandbox_name}")

        tag = f"[preview:{project_id}]"
        self._in_flight.add(project_id)
        t_start = time.time()
        try:
            logger.info(f"{tag} Creating preview for {owner}/{repo}@{branch} in sandbox {sandbox_name}")
            try:
                handle = await self.sandbox_client.create_sandbox(
                    sandbox_name,
                    region=options.region,
                    ram_mb=options.ram_mb,
                    cpus=options.cpus,
                )
                logger.info(f"{tag} Sandbox {sandbox_name} created ({handle.id})")

                credential = options.credential or getattr(repo_client, "credential", None)
                if credential is None:
                    logger.warning(f"{tag} No repository credential, cloning unauthenticated")

                package_manager = await detect_package_manager(repo_client, owner, repo, branch)

                server = await self.sandbox_client.clone_and_run(
                    handle,
                    repo_clone_url(owner, repo),
                    branch,
                    timeout_ms=options.timeout_ms,
                    package_manager=package_manager,
                    script_name=options.script_name,
                    auth_token=credential.token if credential else None,
                    port_patterns=options.port_patterns,
                )
            except Exception as e:
                logger.error(
                    f"{tag} Failed to create preview after {time.time() - t_start:.1f}s: {e} "
                    f"(sandbox {sandbox_name} may still be allocated)"
                )
                raise PreviewCreationError(project_id, e, sandbox_name=sandbox_name) from e

            instance = PreviewInstance(
                project_id=project_id,
                owner=owner,
                repo=repo,
                branch=branch,
                sandbox_name=sandbox_name,
                sandbox_id=handle.id,
                port=server.port,
                process_id=server.process_id,
                preview_url=server.preview_url or self.preview_url_for(sandbox_name),
                package_manager=package_manager,
                script_name=options.script_name,
            )
            self.registry.put(instance)
            logger.info(f"{tag} Preview running at {instance.preview_url} ({time.time() - t_start:.1f}s)")
            return instance
        finally:
            self._in_flight.discard(project_id)

    def is_creating(self, project_id: str) -> bool:
        return project_id in self._in_flight

    def get_preview(self, project_id: str) -> PreviewInstance | None:
        return self.registry.get(project_id)

    def list_previews(self) -> list[PreviewInstance]:
        return self.registry.values()

    async def destroy_preview(self, project_id: str) -> None:
        """Tear down a preview's sandbox, then forget it.

        If the provider call fails the entry stays registered so the caller
        can retry.
        """
        instance = self.registry.get(project_id)
        if instance is None:
            logger.warning(f"[preview:{project_id}] Preview not found for destruction")
            return

        logger.info(f"[preview:{project_id}] Destroying sandbox {instance.sandbox_name}")
        try:
            await self.sandbox_client.destroy_sandbox(instance.sandbox_name)
        except Exception as e:
            logger.error(f"[preview:{project_id}] Failed to destroy preview: {e}")
            raise
        instance.status = "stopped"
        self.registry.remove(project_id)
        logger.info(f"[preview:{project_id}] Preview destroyed")

    def get_preview_status(self, project_id: str) -> dict:
        instance = self.registry.get(project_id)
        if instance is None:
            return {"status": "not_found", "project_id": project_id}
        return {
            "project_id": project_id,
            "status": instance.status,
            "preview_url": instance.preview_url,
            "sandbox_name": instance.sandbox_name,
            "package_manager": instance.package_manager,
            "created_at": instance.created_at.isoformat(),
            "uptime_ms": instance.uptime_ms(),
        }

    async def fetch_logs(self, project_id: str, limit: int = 100) -> str:
        instance = self.registry.get(project_id)
        if instance is None:
            return f"No active preview for project {project_id}"
        return await self.sandbox_client.fetch_logs(instance.sandbox_name, instance.process_id, limit)


_preview_manager: PreviewManager | None = None


def get_preview_manager() -> PreviewManager:
    global _preview_manager
    if _preview_manager is None:
        _preview_manager = PreviewManager()
    return _preview_manager
