import os
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from roseram.auth import User, optional_user, resolve_github_credential
from roseram.database import get_preview_record, get_supabase, insert_preview_record, update_preview_record
from roseram.errors import ConflictError, ExternalServiceError, PreviewCreationError, format_error_message
from roseram.services.github import GitHubClient
from roseram.services.preview_manager import PreviewOptions, get_preview_manager

logger = logging.getLogger(__name__)

router = APIRouter()

PROVISION_TIMEOUT_SECS = int(os.getenv("PREVIEW_PROVISION_TIMEOUT_SECS", "1200"))

# Keeps provisioning tasks referenced until they finish
_provisioning_tasks: set[asyncio.Task] = set()


class AutoPreviewRequest(BaseModel):
    project_id: str = Field(alias="projectId")
    owner: str
    repo: str
    branch: str = "main"
    region: str = "ord"
    ram_mb: int = Field(1024, alias="ramMB")
    cpus: int = 1


def _require_project_id(project_id: str | None) -> str:
    if not project_id:
        raise HTTPException(status_code=400, detail="projectId is required")
    return project_id


async def _provision_preview(
    record_id: str | None,
    repo_client: GitHubClient,
    project_id: str,
    owner: str,
    repo: str,
    branch: str,
    options: PreviewOptions,
) -> None:
    """Run create_preview under a watchdog and mirror the outcome onto the stored record."""
    tag = f"[auto-preview:{project_id}]"
    manager = get_preview_manager()

    if record_id:
        await update_preview_record(record_id, {"status": "initializing", "error_message": None})

    try:
        instance = await asyncio.wait_for(
            manager.create_preview(repo_client, project_id, owner, repo, branch, options),
            timeout=PROVISION_TIMEOUT_SECS,
        )
    except asyncio.TimeoutError:
        message = f"Preview provisioning timed out after {PROVISION_TIMEOUT_SECS // 60} minutes"
        logger.error(f"{tag} {message}")
        if record_id:
            await update_preview_record(record_id, {"status": "error", "error_message": message})
        return
    except PreviewCreationError as e:
        logger.error(f"{tag} Provisioning failed: {e.to_dict()}")
        if record_id:
            await update_preview_record(
                record_id,
                {"status": "error", "error_message": e.error, "sandbox_name": e.sandbox_name},
            )
        return
    except Exception as e:
        logger.error(f"{tag} Provisioning task crashed: {e}")
        if record_id:
            await update_preview_record(record_id, {"status": "error", "error_message": format_error_message(e)})
        return

    if record_id:
        await update_preview_record(
            record_id,
            {
                "status": "running",
                "sandbox_name": instance.sandbox_name,
                "port": instance.port,
                "preview_url": instance.preview_url,
                "package_manager": instance.package_manager,
                "script_name": instance.script_name,
                "error_message": None,
            },
        )
    logger.info(f"{tag} Provisioning complete: {instance.preview_url}")


@router.post("/api/auto-preview")
async def create_auto_preview(request: AutoPreviewRequest, user: User = Depends(optional_user)):
    """Start provisioning a preview in the background and return its record immediately."""
    project_id = request.project_id
    tag = f"[auto-preview:{project_id}]"
    logger.info(f"{tag} Starting preview for {request.owner}/{request.repo}@{request.branch} (user={user.id})")

    manager = get_preview_manager()
    if manager.is_creating(project_id):
        raise ConflictError(f"A preview for project {project_id} is already being created")

    existing = await get_preview_record(project_id, user.id)
    if existing and existing.get("status") == "running":
        logger.info(f"{tag} Reusing running preview {existing.get('sandbox_name')}")
        return {"success": True, "preview": existing, "message": "Using existing preview"}

    row = {
        "project_id": project_id,
        "user_id": user.id,
        "owner": request.owner,
        "repo": request.repo,
        "branch": request.branch,
        "status": "initializing",
        "preview_url": None,
        "package_manager": None,
        "error_message": None,
    }
    record = await insert_preview_record(row)
    if record is None and get_supabase() is not None:
        raise ExternalServiceError("Database", "Failed to create preview record")

    credential = await resolve_github_credential(user)
    options = PreviewOptions(
        region=request.region,
        ram_mb=request.ram_mb,
        cpus=request.cpus,
        credential=credential,
    )
    task = asyncio.create_task(
        _provision_preview(
            record.get("id") if record else None,
            GitHubClient(credential),
            project_id,
            request.owner,
            request.repo,
            request.branch,
            options,
        )
    )
    _provisioning_tasks.add(task)
    task.add_done_callback(_provisioning_tasks.discard)

    return {"success": True, "preview": record or row, "message": "Preview provisioning started"}


@router.get("/api/auto-preview")
async def get_auto_preview(
    project_id: str | None = Query(None, alias="projectId"),
    user: User = Depends(optional_user),
):
    project_id = _require_project_id(project_id)

    record = await get_preview_record(project_id, None if user.is_guest else user.id)
    if record:
        return {"success": True, "preview": record}

    manager = get_preview_manager()
    status = manager.get_preview_status(project_id)
    if status["status"] == "not_found" and manager.is_creating(project_id):
        status = {"project_id": project_id, "status": "initializing"}
    if status["status"] == "not_found":
        raise HTTPException(status_code=404, detail="Preview not found")
    return {"success": True, "preview": status}


@router.delete("/api/auto-preview")
async def delete_auto_preview(
    project_id: str | None = Query(None, alias="projectId"),
    user: User = Depends(optional_user),
):
    project_id = _require_project_id(project_id)
    tag = f"[auto-preview:{project_id}]"
    manager = get_preview_manager()

    record = await get_preview_record(project_id, None if user.is_guest else user.id)
    instance = manager.get_preview(project_id)
    if record is None and instance is None:
        raise HTTPException(status_code=404, detail="Preview not found")

    logger.info(f"{tag} Destroying preview (user={user.id})")
    if instance is not None:
        await manager.destroy_preview(project_id)
    elif record.get("sandbox_name"):
        try:
            await manager.sandbox_client.destroy_sandbox(record["sandbox_name"])
        except Exception as e:
            logger.warning(f"{tag} Could not destroy sandbox {record['sandbox_name']}: {e}")

    if record is not None:
        await update_preview_record(record["id"], {"status": "stopped", "error_message": None})

    return {"success": True, "message": "Preview destroyed"}


@router.get("/api/auto-preview/logs")
async def get_auto_preview_logs(
    project_id: str | None = Query(None, alias="projectId"),
    limit: int = 100,
    user: User = Depends(optional_user),
):
    project_id = _require_project_id(project_id)
    limit = max(1, min(1000, limit))
    manager = get_preview_manager()

    if manager.get_preview(project_id) is not None:
        logs = await manager.fetch_logs(project_id, limit)
    else:
        record = await get_preview_record(project_id, None if user.is_guest else user.id)
        if not record or not record.get("sandbox_name"):
            raise HTTPException(status_code=404, detail="Preview not found")
        logs = await manager.sandbox_client.fetch_logs(record["sandbox_name"], None, limit)

    return {"success": True, "projectId": project_id, "logs": logs}


@router.get("/api/auto-preview/active")
async def list_active_previews():
    previews = get_preview_manager().list_previews()
    return {"success": True, "count": len(previews), "previews": [p.to_dict() for p in previews]}
