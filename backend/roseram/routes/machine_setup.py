import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from roseram.auth import User, require_user, resolve_github_credential
from roseram.errors import NotFoundError
from roseram.services.setup_session import (
    SetupSession,
    StepFailed,
    get_setup_service,
    step_result_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class ExecuteStepRequest(BaseModel):
    session_id: str = Field(alias="sessionId")
    step_number: int = Field(alias="stepNumber")


async def _owned_session(session_id: str, user: User) -> SetupSession:
    session = await get_setup_service().get_setup_session(session_id)
    if session.user_id != user.id:
        logger.warning(f"[machine-setup:{session_id}] Session requested by user {user.id} who does not own it")
        raise NotFoundError("Setup session")
    return session


@router.get("/api/machine-setup")
async def initialize_machine_setup(
    project_id: str | None = Query(None, alias="projectId"),
    github_repo: str | None = Query(None, alias="githubRepo"),
    github_branch: str = Query("main", alias="githubBranch"),
    user: User = Depends(require_user),
):
    """Create a setup session for the project, or return the one already in progress."""
    if not project_id or not github_repo:
        raise HTTPException(status_code=400, detail="Missing projectId or githubRepo")

    session = await get_setup_service().initialize_setup_session(
        project_id, github_repo, github_branch, user_id=user.id
    )
    return {"success": True, "session": session.to_dict()}


@router.post("/api/machine-setup")
async def execute_machine_setup_step(request: ExecuteStepRequest, user: User = Depends(require_user)):
    await _owned_session(request.session_id, user)
    credential = await resolve_github_credential(user)

    session, result = await get_setup_service().execute_setup_step(
        request.session_id,
        request.step_number,
        credential.token if credential else None,
    )
    body = {
        "success": not isinstance(result, StepFailed),
        "session": session.to_dict(),
        "stepResult": step_result_to_dict(result),
    }
    if isinstance(result, StepFailed):
        body["error"] = result.error
        logger.error(f"[machine-setup:{request.session_id}] Step {request.step_number} failed: {result.error}")
        return JSONResponse(status_code=500, content=body)
    return body


@router.get("/api/machine-setup/{session_id}")
async def get_machine_setup(session_id: str, user: User = Depends(require_user)):
    session = await _owned_session(session_id, user)
    return {"success": True, "session": session.to_dict()}


@router.delete("/api/machine-setup/{session_id}")
async def cancel_machine_setup(session_id: str, user: User = Depends(require_user)):
    await _owned_session(session_id, user)
    session = await get_setup_service().cancel_setup_session(session_id)
    logger.info(f"[machine-setup:{session_id}] Cancelled by user {user.id}")
    return {"success": True, "session": session.to_dict()}
