import logging

from fastapi import APIRouter, HTTPException, Query

from roseram.services.status_poller import resolve_app_status

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/instant-preview/status")
async def instant_preview_status(
    app_name: str | None = Query(None, alias="appName"),
    project_id: str | None = Query(None, alias="projectId"),
):
    """Normalised machine status for polling clients. No authentication required."""
    if not app_name:
        raise HTTPException(status_code=400, detail="Missing appName parameter")

    logger.info(f"[status:{app_name}] Status check (project={project_id})")
    status = await resolve_app_status(app_name)
    return {"success": True, "projectId": project_id, **status}
