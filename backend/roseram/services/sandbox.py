import os
import re
import time
import shlex
import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from roseram.errors import (
    ExternalServiceError,
    ProvisioningError,
    SetupTimeoutError,
)
from roseram.services.package_manager import NPM, get_commands

logger = logging.getLogger(__name__)

MAX_SANDBOX_NAME_LENGTH = 63
SANDBOX_IMAGE = os.getenv("SANDBOX_IMAGE", "node:20-slim")
DEV_SERVER_LOG = "/tmp/dev-server.log"
WORK_DIR = "/workspace"
DEFAULT_DEV_PORT = 3000

FLY_API_URL = os.getenv("FLY_API_URL", "https://api.machines.dev/v1")
FLY_GRAPHQL_URL = "https://api.fly.io/graphql"
FLY_ORG_SLUG = os.getenv("FLY_ORG_SLUG", "personal")

DEFAULT_PORT_PATTERNS = [
    r"(?:listening|Local:).*?(\d{4,5})",
    r"http://localhost:(\d{4,5})",
    r"Port (\d{4,5})",
    r":(\d{4,5})/",
    r"\*\*\*\s*(\d{4,5})\s*\*\*\*",
    r"http.*?(\d{4,5})",
]

_TRANSIENT_MARKERS = ("WebSocket", "ECONNREFUSED", "ENOTFOUND", "ETIMEDOUT", "timed out", "timeout", "Connection refused", "Connection reset")
_EXITED_MARKER = "__DEV_SERVER_EXITED__"


@dataclass
class SandboxHandle:
    name: str
    id: str
    region: str | None = None
    raw: object = field(default=None, repr=False)


@dataclass
class DevServerInfo:
    port: int
    process_id: int | None
    package_manager: str = NPM
    script_name: str = "dev"
    # Providers that do not serve previews on {name}.{domain} report their own link.
    preview_url: str | None = None


def validate_sandbox_name(name: str):
    if not name or len(name) > MAX_SANDBOX_NAME_LENGTH:
        raise ProvisioningError(
            f"Sandbox name must be 1-{MAX_SANDBOX_NAME_LENGTH} characters (got {len(name or '')})",
            {"sandboxName": name},
        )


def is_transient_error(error: Exception) -> bool:
    if isinstance(error, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    message = str(error)
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def detect_port(output: str, patterns: list[str] | None = None) -> int | None:
    """Find the port a dev server announced in its output."""
    compiled = []
    for pattern in patterns or DEFAULT_PORT_PATTERNS:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            logger.warning(f"[sandbox] Ignoring invalid port pattern {pattern!r}: {e}")
    if not compiled:
        compiled = [re.compile(p, re.IGNORECASE) for p in DEFAULT_PORT_PATTERNS]

    for line in output.splitlines():
        for regex in compiled:
            match = regex.search(line)
            if match and match.group(1):
                return int(match.group(1))
    return None


def build_setup_command(
    repo_url: str,
    branch: str,
    package_manager: str = NPM,
    script_name: str = "dev",
    auth_token: str | None = None,
    work_dir: str = WORK_DIR,
) -> str:
    """Shell script that clones, installs, and launches the dev server in the background.

    The last line the script prints is the PID of the background dev server.
    """
    commands = get_commands(package_manager)
    url = shlex.quote(repo_url)
    ref = shlex.quote(branch)

    git_auth = ""
    if auth_token:
        rewrite = shlex.quote(f"https://{auth_token}@github.com/")
        git_auth = f"git config --global url.{rewrite}.insteadOf https://github.com/ && "

    run_cmd = f"{package_manager} run {shlex.quote(script_name)} || {commands['dev']} || {commands['start']}"
    steps = [
        f"mkdir -p {work_dir} && cd {work_dir}",
        f"{git_auth}(git clone --depth 1 --branch {ref} {url} repo 2>&1 || git clone --depth 1 {url} repo 2>&1)",
        "cd repo",
        f"(test ! -f package.json || {commands['install']} 2>&1)",
        f"(nohup sh -c {shlex.quote(run_cmd)} > {DEV_SERVER_LOG} 2>&1 & echo $!)",
    ]
    return " && ".join(steps)


def _parse_pid(output: str) -> int | None:
    for line in reversed(output.strip().splitlines()):
        line = line.strip()
        if line.isdigit():
            return int(line)
    return None


class SandboxClient:
    """Interface the preview flow depends on.

    Providers implement ``create_sandbox``, ``destroy_sandbox``, ``get_status``,
    ``_exec`` and ``_handle_for``; cloning, booting and log reads are shared.
    """

    provider = "base"
    poll_interval = 2.0

    async def create_sandbox(self, name: str, region: str = "ord", ram_mb: int = 1024, cpus: int = 1) -> SandboxHandle:
        raise NotImplementedError

    async def destroy_sandbox(self, name: str) -> None:
        raise NotImplementedError

    async def get_status(self, name: str) -> dict:
        raise NotImplementedError

    async def _exec(self, handle: SandboxHandle, command: str, timeout_secs: int) -> tuple[int, str]:
        raise NotImplementedError

    async def _handle_for(self, name: str) -> SandboxHandle | None:
        raise NotImplementedError

    def _preview_link(self, handle: SandboxHandle, port: int) -> str | None:
        return None

    async def clone_and_run(
        self,
        handle: SandboxHandle,
        repo_url: str,
        branch: str,
        timeout_ms: int = 120_000,
        package_manager: str = NPM,
        script_name: str = "dev",
        auth_token: str | None = None,
        port_patterns: list[str] | None = None,
    ) -> DevServerInfo:
        """Clone, install and boot inside the sandbox; resolve once a port is announced."""
        t_start = time.monotonic()
        deadline = t_start + timeout_ms / 1000
        tag = f"[sandbox:{handle.name}]"

        command = build_setup_command(repo_url, branch, package_manager, script_name, auth_token)
        logger.info(
            f"{tag} Cloning {repo_url}@{branch} with {package_manager} "
            f"(script={script_name}, authenticated={bool(auth_token)}, timeout={timeout_ms // 1000}s)"
        )

        try:
            remaining = max(1, int(deadline - time.monotonic()))
            exit_code, output = await asyncio.wait_for(self._exec(handle, command, remaining), timeout=remaining + 5)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise SetupTimeoutError(
                f"Clone and install did not finish within {timeout_ms // 1000}s",
                {"sandboxName": handle.name},
            ) from e

        if exit_code != 0:
            tail = output[-500:] if output else ""
            if auth_token:
                tail = tail.replace(auth_token, "***")
            logger.error(f"{tag} Setup sequence exited with {exit_code}: {tail}")
            raise ProvisioningError(f"Repository setup failed with exit code {exit_code}", {"output": tail})

        pid = _parse_pid(output)
        logger.info(f"{tag} Dependencies installed in {time.monotonic() - t_start:.1f}s, dev server pid={pid}")

        alive_check = f"kill -0 {pid} 2>/dev/null || echo {_EXITED_MARKER}" if pid else "true"
        log_check = f"tail -n 50 {DEV_SERVER_LOG} 2>/dev/null; {alive_check}"
        attempt = 0
        while time.monotonic() < deadline:
            attempt += 1
            await asyncio.sleep(self.poll_interval)
            try:
                _, log_text = await self._exec(handle, log_check, 10)
            except Exception as e:
                if attempt % 5 == 0:
                    logger.info(f"{tag} Still waiting for dev server (attempt {attempt}): {e}")
                continue

            port = detect_port(log_text.replace(_EXITED_MARKER, ""), port_patterns)
            if port:
                logger.info(f"{tag} Dev server listening on {port} after {time.monotonic() - t_start:.1f}s")
                return DevServerInfo(
                    port=port,
                    process_id=pid,
                    package_manager=package_manager,
                    script_name=script_name,
                    preview_url=self._preview_link(handle, port),
                )
            if _EXITED_MARKER in log_text:
                tail = log_text.replace(_EXITED_MARKER, "").strip()[-300:]
                logger.error(f"{tag} Dev server exited before opening a port: {tail}")
                raise ProvisioningError("Dev server exited before opening a port", {"output": tail})

        logger.warning(f"{tag} Dev server did not open a port within {timeout_ms // 1000}s")
        raise SetupTimeoutError(
            f"Dev server did not open a port within {timeout_ms // 1000}s. "
            "Verify the repository has correct dependencies and the dev server starts properly.",
            {"sandboxName": handle.name},
        )

    async def fetch_logs(self, sandbox_name: str, process_id: int | None = None, limit: int = 100) -> str:
        """Recent dev-server output. Returns an explanation instead of raising."""
        try:
            handle = await self._handle_for(sandbox_name)
            if handle is None:
                return f"No sandbox named {sandbox_name}"
            _, output = await self._exec(handle, f"tail -n {int(limit)} {DEV_SERVER_LOG} 2>&1", 10)
            return output or "No output yet"
        except Exception as e:
            logger.warning(f"[sandbox:{sandbox_name}] Could not fetch logs (pid={process_id}): {e}")
            return f"Logs unavailable: {e}"


class FlyMachinesClient(SandboxClient):
    """Sandboxes as single-machine Fly.io apps, driven through the Machines REST API."""

    provider = "fly"

    def __init__(
        self,
        token: str | None = None,
        api_url: str = FLY_API_URL,
        org_slug: str = FLY_ORG_SLUG,
        image: str = SANDBOX_IMAGE,
        timeout: float = 60.0,
    ):
        self.token = token if token is not None else (os.getenv("FLY_API_TOKEN") or os.getenv("FLY_IO_TOKEN", ""))
        self.api_url = api_url.rstrip("/")
        self.org_slug = org_slug
        self.image = image
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.token)

    async def _request(self, method: str, path: str, timeout: float | None = None, **kwargs) -> httpx.Response:
        if not self.token:
            raise ExternalServiceError("Fly.io", "FLY_API_TOKEN is not configured")
        headers = {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}
        async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
            return await client.request(method, f"{self.api_url}{path}", headers=headers, **kwargs)

    async def _allocate_ips(self, app_name: str):
        """Give the app public addresses so {app}.fly.dev resolves. Best-effort."""
        mutation = (
            "mutation($input: AllocateIPAddressInput!) "
            "{ allocateIpAddress(input: $input) { ipAddress { id address type } } }"
        )
        async with httpx.AsyncClient(timeout=30.0) as client:
            for ip_type in ("shared_v4", "v6"):
                try:
                    resp = await client.post(
                        FLY_GRAPHQL_URL,
                        headers={"Authorization": f"Bearer {self.token}"},
                        json={"query": mutation, "variables": {"input": {"appId": app_name, "type": ip_type}}},
                    )
                    data = resp.json()
                    if data.get("errors"):
                        logger.warning(f"[fly:{app_name}] IP allocation ({ip_type}) returned errors: {data['errors']}")
                except Exception as e:
                    logger.warning(f"[fly:{app_name}] Could not allocate {ip_type} address: {e}")

    async def create_sandbox(
        self,
        name: str,
        region: str = "ord",
        ram_mb: int = 1024,
        cpus: int = 1,
        retries: int = 2,
    ) -> SandboxHandle:
        validate_sandbox_name(name)
        try:
            return await self._create(name, region, ram_mb, cpus)
        except (ProvisioningError, ExternalServiceError):
            raise
        except Exception as e:
            if retries > 0 and is_transient_error(e):
                logger.info(f"[fly:{name}] Transient error creating sandbox ({e}), retrying ({retries} left)")
                await asyncio.sleep(1)
                return await self.create_sandbox(name, region, ram_mb, cpus, retries - 1)
            logger.error(f"[fly:{name}] Failed to create sandbox: {e}")
            raise ProvisioningError(f"Failed to create sandbox: {e}", {"sandboxName": name}) from e

    async def _create(self, name: str, region: str, ram_mb: int, cpus: int) -> SandboxHandle:
        t_start = time.time()
        resp = await self._request("POST", "/apps", json={"app_name": name, "org_slug": self.org_slug})
        if resp.status_code in (409, 422) and "already" in resp.text.lower():
            # Left behind by an earlier attempt under the same name
            logger.info(f"[fly:{name}] App already exists, reusing it")
            existing = await self._machines(name) or []
            if existing:
                return await self._reuse_machine(name, existing[0], region, t_start)
        elif resp.status_code >= 400:
            raise ProvisioningError(
                f"Fly.io refused app {name} ({resp.status_code}): {resp.text[:200]}",
                {"sandboxName": name, "statusCode": resp.status_code},
            )

        machine_config = {
            "region": region,
            "config": {
                "image": self.image,
                "guest": {"cpu_kind": "shared", "cpus": cpus, "memory_mb": ram_mb},
                "init": {"exec": ["sleep", "infinity"]},
                "env": {"PORT": str(DEFAULT_DEV_PORT), "HOST": "0.0.0.0"},
                "services": [
                    {
                        "protocol": "tcp",
                        "internal_port": DEFAULT_DEV_PORT,
                        "ports": [
                            {"port": 443, "handlers": ["tls", "http"]},
                            {"port": 80, "handlers": ["http"]},
                        ],
                    }
                ],
                "restart": {"policy": "no"},
            },
        }
        resp = await self._request("POST", f"/apps/{name}/machines", json=machine_config)
        if resp.status_code >= 400:
            raise ProvisioningError(
                f"Fly.io could not allocate a machine ({resp.status_code}): {resp.text[:200]}",
                {"sandboxName": name, "statusCode": resp.status_code},
            )
        machine = resp.json()
        machine_id = machine.get("id", "")

        await self._wait_started(name, machine_id)
        await self._allocate_ips(name)
        logger.info(f"[fly:{name}] Created machine {machine_id} in {region} ({time.time() - t_start:.1f}s)")
        return SandboxHandle(name=name, id=machine_id, region=machine.get("region", region), raw=machine)

    async def _wait_started(self, name: str, machine_id: str):
        wait = await self._request(
            "GET",
            f"/apps/{name}/machines/{machine_id}/wait",
            params={"state": "started", "timeout": 60},
            timeout=90.0,
        )
        if wait.status_code >= 400:
            logger.warning(f"[fly:{name}] Machine {machine_id} not confirmed started ({wait.status_code})")

    async def _reuse_machine(self, name: str, machine: dict, region: str, t_start: float) -> SandboxHandle:
        machine_id = machine.get("id", "")
        if machine.get("state") != "started":
            resp = await self._request("POST", f"/apps/{name}/machines/{machine_id}/start")
            if resp.status_code >= 400:
                raise ProvisioningError(
                    f"Fly.io could not start machine {machine_id} ({resp.status_code}): {resp.text[:200]}",
                    {"sandboxName": name, "statusCode": resp.status_code},
                )
            await self._wait_started(name, machine_id)

        await self._allocate_ips(name)
        logger.info(f"[fly:{name}] Reusing machine {machine_id} ({time.time() - t_start:.1f}s)")
        return SandboxHandle(name=name, id=machine_id, region=machine.get("region", region), raw=machine)

    async def _exec(self, handle: SandboxHandle, command: str, timeout_secs: int) -> tuple[int, str]:
        resp = await self._request(
            "POST",
            f"/apps/{handle.name}/machines/{handle.id}/exec",
            json={"command": ["sh", "-c", command], "timeout": timeout_secs},
            timeout=timeout_secs + 10,
        )
        if resp.status_code >= 400:
            raise ExternalServiceError("Fly.io", f"exec failed ({resp.status_code}): {resp.text[:200]}")
        data = resp.json()
        output = (data.get("stdout") or "") + (data.get("stderr") or "")
        return int(data.get("exit_code") or 0), output

    async def _machines(self, name: str) -> list[dict] | None:
        resp = await self._request("GET", f"/apps/{name}/machines")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise ExternalServiceError("Fly.io", f"Could not list machines ({resp.status_code})")
        return resp.json() or []

    async def _handle_for(self, name: str) -> SandboxHandle | None:
        machines = await self._machines(name)
        if not machines:
            return None
        return SandboxHandle(name=name, id=machines[0].get("id", ""), region=machines[0].get("region"))

    async def get_status(self, name: str) -> dict:
        machines = await self._machines(name)
        if machines is None:
            # App not created yet, or already torn down
            return {"machine_state": "unknown", "deployed": False}
        state = machines[0].get("state") if machines else None
        return {"machine_state": state or "unknown", "deployed": state == "started"}

    async def destroy_sandbox(self, name: str) -> None:
        resp = await self._request("DELETE", f"/apps/{name}", params={"force": "true"})
        if resp.status_code == 404:
            logger.info(f"[fly:{name}] Sandbox already gone")
            return
        if resp.status_code >= 400:
            raise ExternalServiceError("Fly.io", f"Failed to destroy sandbox {name} ({resp.status_code})")
        logger.info(f"[fly:{name}] Destroyed sandbox")


class DaytonaSandboxClient(SandboxClient):
    """Sandboxes on Daytona; previews are served from Daytona's own preview links."""

    provider = "daytona"

    def __init__(self, api_key: str | None = None, api_url: str | None = None, image: str = SANDBOX_IMAGE):
        self.api_key = api_key if api_key is not None else os.getenv("DAYTONA_API_KEY", "")
        self.api_url = api_url or os.getenv("DAYTONA_URL", "https://app.daytona.io/api")
        self.image = image
        self._sandboxes: dict[str, object] = {}
        self._daytona = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _client(self):
        if not self.api_key:
            raise ExternalServiceError("Daytona", "DAYTONA_API_KEY is not configured")
        if self._daytona is None:
            from daytona_sdk import Daytona, DaytonaConfig

            self._daytona = Daytona(DaytonaConfig(api_key=self.api_key, api_url=self.api_url))
        return self._daytona

    async def create_sandbox(
        self,
        name: str,
        region: str = "ord",
        ram_mb: int = 1024,
        cpus: int = 1,
        retries: int = 2,
    ) -> SandboxHandle:
        validate_sandbox_name(name)
        daytona = self._client()
        from daytona_sdk import CreateSandboxFromImageParams, Image, Resources

        t_start = time.time()
        try:
            params = CreateSandboxFromImageParams(
                image=Image.base(self.image),
                language="typescript",
                public=True,
                labels={"roseram-sandbox": name},
                resources=Resources(cpu=cpus, memory=max(1, ram_mb // 1024)),
            )
            sandbox = daytona.create(params, timeout=180)
        except Exception as e:
            if retries > 0 and is_transient_error(e):
                logger.info(f"[daytona:{name}] Transient error creating sandbox ({e}), retrying ({retries} left)")
                await asyncio.sleep(1)
                return await self.create_sandbox(name, region, ram_mb, cpus, retries - 1)
            logger.error(f"[daytona:{name}] Creation failed after {time.time() - t_start:.1f}s: {e}")
            raise ProvisioningError(f"Failed to create sandbox: {e}", {"sandboxName": name}) from e

        self._sandboxes[name] = sandbox
        sandbox_id = getattr(sandbox, "id", "unknown")
        logger.info(f"[daytona:{name}] Created sandbox {sandbox_id} in {time.time() - t_start:.1f}s")
        return SandboxHandle(name=name, id=sandbox_id, region=region, raw=sandbox)

    async def _exec(self, handle: SandboxHandle, command: str, timeout_secs: int) -> tuple[int, str]:
        sandbox = handle.raw or self._sandboxes.get(handle.name)
        if sandbox is None:
            raise ExternalServiceError("Daytona", f"No sandbox instance for {handle.name}")
        try:
            result = sandbox.process.exec(f"sh -c {shlex.quote(command)}", timeout=timeout_secs)
        except Exception as e:
            if "timeout" in str(e).lower() or "timed out" in str(e).lower():
                raise asyncio.TimeoutError(str(e)) from e
            raise
        return int(result.exit_code or 0), result.result or ""

    async def _handle_for(self, name: str) -> SandboxHandle | None:
        sandbox = self._sandboxes.get(name)
        if sandbox is None:
            return None
        return SandboxHandle(name=name, id=getattr(sandbox, "id", "unknown"), raw=sandbox)

    def _preview_link(self, handle: SandboxHandle, port: int) -> str | None:
        try:
            preview = handle.raw.get_preview_link(port)
            return preview.url if hasattr(preview, "url") else str(preview)
        except Exception as e:
            logger.warning(f"[daytona:{handle.name}] Could not get preview link for port {port}: {e}")
            return None

    async def get_status(self, name: str) -> dict:
        sandbox = self._sandboxes.get(name)
        if sandbox is None:
            return {"machine_state": "unknown", "deployed": False}
        sandbox = self._client().get(getattr(sandbox, "id", ""))
        state = str(getattr(sandbox, "state", "unknown")).lower().rsplit(".", 1)[-1]
        return {"machine_state": "started" if state == "started" else state, "deployed": state == "started"}

    async def destroy_sandbox(self, name: str) -> None:
        sandbox = self._sandboxes.get(name)
        if sandbox is None:
            logger.info(f"[daytona:{name}] No sandbox instance to clean up")
            return
        sandbox_id = getattr(sandbox, "id", "unknown")
        try:
            self._client().get(sandbox_id).delete()
        except Exception as e:
            if "not found" in str(e).lower():
                logger.info(f"[daytona:{name}] Sandbox {sandbox_id} already gone")
            else:
                logger.error(f"[daytona:{name}] Failed to delete sandbox {sandbox_id}: {e}")
                raise ExternalServiceError("Daytona", f"Failed to destroy sandbox {name}: {e}") from e
        self._sandboxes.pop(name, None)
        logger.info(f"[daytona:{name}] Deleted sandbox {sandbox_id}")


_sandbox_client: SandboxClient | None = None


def get_sandbox_client() -> SandboxClient:
    """Process-wide sandbox client for the provider named by SANDBOX_PROVIDER."""
    global _sandbox_client
    if _sandbox_client is None:
        provider = os.getenv("SANDBOX_PROVIDER", "fly").lower()
        if provider == "daytona":
            _sandbox_client = DaytonaSandboxClient()
        else:
            _sandbox_client = FlyMachinesClient()
        logger.info(f"[sandbox] Using {_sandbox_client.provider} provider")
    return _sandbox_client
