"""Preview status: normalisation, live/database resolution and client-side polling."""

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from roseram import database
from roseram.services.sandbox import SandboxClient, get_sandbox_client

logger = logging.getLogger(__name__)

PENDING = "pending"
INITIALIZING = "initializing"
RUNNING = "running"
STOPPED = "stopped"
ERROR = "error"

TERMINAL_STATUSES = (RUNNING, ERROR)

_STATUS_ALIASES = {
    "pending": PENDING,
    "queued": PENDING,
    "created": INITIALIZING,
    "creating": INITIALIZING,
    "initializing": INITIALIZING,
    "starting": INITIALIZING,
    "provisioning": INITIALIZING,
    "started": RUNNING,
    "running": RUNNING,
    "stopping": STOPPED,
    "stopped": STOPPED,
    "suspended": STOPPED,
    "destroyed": STOPPED,
    "destroying": STOPPED,
    "error": ERROR,
    "failed": ERROR,
}


def normalize_status(raw: str | None) -> str:
    """Collapse provider and database states into pending|initializing|running|stopped|error."""
    if not raw:
        return PENDING
    return _STATUS_ALIASES.get(str(raw).strip().lower(), PENDING)


async def resolve_app_status(app_name: str, sandbox_client: SandboxClient | None = None) -> dict:
    """Status for a sandbox, from the provider if it answers, else from the stored row."""
    client = sandbox_client or get_sandbox_client()
    tag = f"[status:{app_name}]"

    try:
        live = await client.get_status(app_name)
        machine_state = live.get("machine_state", "unknown")
        return {
            "app_name": app_name,
            "status": normalize_status(machine_state),
            "machine_state": machine_state,
            "deployed": bool(live.get("deployed")),
            "source": "live",
        }
    except Exception as e:
        logger.warning(f"{tag} Live status unavailable, falling back to database: {e}")

    try:
        record = await database.get_app_status_record(app_name)
    except Exception as e:
        logger.error(f"{tag} Database status lookup failed: {e}")
        record = None

    if record:
        status = normalize_status(record.get("status"))
        return {
            "app_name": app_name,
            "status": status,
            "machine_state": "started" if status == RUNNING else "pending",
            "deployed": status == RUNNING,
            "preview_url": record.get("preview_url"),
            "error_message": record.get("error_message"),
            "source": "database",
        }

    return {
        "app_name": app_name,
        "status": PENDING,
        "machine_state": "pending",
        "deployed": False,
        "source": "none",
    }


async def poll_preview_status(
    fetch_status: Callable[[str], Awaitable[dict | None]],
    project_id: str,
    max_attempts: int = 60,
    interval_ms: int = 5000,
    on_update: Callable[[dict], None] | None = None,
) -> dict | None:
    """Re-fetch status until it is running or error, or attempts run out.

    Never raises. On exhaustion the last status seen is returned (None if no
    fetch ever succeeded); the caller decides what a timeout means.
    """
    tag = f"[poll:{project_id}]"
    last_status: dict | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            current = await fetch_status(project_id)
        except Exception as e:
            logger.warning(f"{tag} Status fetch failed (attempt {attempt}/{max_attempts}): {e}")
            current = None

        if current:
            last_status = current
            if on_update:
                on_update(current)
            if normalize_status(current.get("status")) in TERMINAL_STATUSES:
                logger.info(f"{tag} Reached {current.get('status')} after {attempt} attempt(s)")
                return current

        if attempt < max_attempts:
            await asyncio.sleep(interval_ms / 1000)

    logger.info(f"{tag} Gave up after {max_attempts} attempts, last status {last_status and last_status.get('status')}")
    return last_status


def http_status_fetcher(
    base_url: str,
    access_token: str | None = None,
    timeout: float = 10.0,
) -> Callable[[str], Awaitable[dict | None]]:
    """Fetcher for ``poll_preview_status`` that reads ``GET /api/auto-preview``."""
    headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
    url = f"{base_url.rstrip('/')}/api/auto-preview"

    async def fetch(project_id: str) -> dict | None:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url, params={"projectId": project_id}, headers=headers)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json().get("preview")

    return fetch
