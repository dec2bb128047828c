"""
Sandbox Lifecycle API Routes

Endpoints the preview panel (or HttpPreviewBackend) calls:
- Create a project's container and launch its dev server
- Resume or recreate the container after expiry
- (Re)start the dev server
- Sandbox and dev-server liveness checks
- Sandbox status against its TTL, destroy, project state
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from services.sandbox_lifecycle import SandboxLifecycleService, get_sandbox_lifecycle

logger = logging.getLogger("api.sandbox")

router = APIRouter(prefix="/api", tags=["sandbox"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProjectRequest(_CamelModel):
    """Request model for project-scoped operations"""

    project_id: str = Field(..., alias="projectId", description="Project ID")
    user_id: str = Field(..., alias="userID", description="User ID")


class CreateContainerRequest(ProjectRequest):
    """Request model for creating a project's container"""

    title: Optional[str] = Field(None, description="Project title for new projects")


class StartServerRequest(ProjectRequest):
    """Request model for starting the dev server"""

    sandbox_id: str = Field(..., alias="sandboxId", description="Sandbox ID")
    force: bool = Field(False, description="Relaunch even if the server looks healthy")


class CheckSandboxRequest(_CamelModel):
    """Request model for a sandbox liveness check"""

    sandbox_id: Optional[str] = Field(None, alias="sandboxId", description="Sandbox ID")


class CheckServerRequest(_CamelModel):
    """Request model for a dev-server liveness check"""

    url: Optional[str] = Field(None, description="Tunnel or public URL to probe")
    sandbox_id: Optional[str] = Field(
        None, alias="sandboxId", description="Sandbox ID for the in-sandbox fallback probe"
    )


class LivenessResponse(BaseModel):
    """Response model for liveness checks"""

    isAlive: bool
    reason: Optional[str] = None


class SandboxStatusResponse(BaseModel):
    """Response model for sandbox status"""

    success: bool
    isRunning: bool
    needsResume: bool
    startedAt: Optional[str] = None
    remainingSeconds: int
    sandboxId: Optional[str] = None


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

_ERROR_STATUS = {
    "Project not found": 404,
    "Sandbox does not belong to project": 403,
}


def _respond(result: Dict[str, Any], failure_status: int = 500) -> JSONResponse:
    """Map a lifecycle result onto an HTTP response"""
    if result.get("success", True):
        return JSONResponse(status_code=200, content=result)

    error = result.get("error") or "Unknown error"
    status = _ERROR_STATUS.get(error)
    if status is not None:
        raise HTTPException(status_code=status, detail=error)
    return JSONResponse(status_code=failure_status, content=result)


# =============================================================================
# API ENDPOINTS
# =============================================================================


@router.post("/create-container")
async def create_container(
    request: CreateContainerRequest,
    lifecycle: SandboxLifecycleService = Depends(get_sandbox_lifecycle),
):
    """
    Create (or reuse) the project's sandbox and launch its dev server.

    Returns ``{success, sandboxId, url, ngrokUrl, serverReady, recreated}``.
    """
    try:
        logger.info(
            f"Creating container for user={request.user_id}, project={request.project_id}"
        )
        result = await lifecycle.create_container(
            request.project_id, request.user_id, request.title
        )
        return _respond(result)

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating container: {e}", exc_info=True)
        raise HTTPException(
            status_code=500, detail=f"Failed to create container: {str(e)}"
        )


@router.post("/resume-container")
async def resume_container(
    request: ProjectRequest,
    lifecycle: SandboxLifecycleService = Depends(get_sandbox_lifecycle),
):
    """
    Reconnect to the recorded sandbox, or recreate it if it has expired.

    Safe to call from several tabs at once: all callers converge on one
    sandbox.
    """
    try:
        logger.info(
            f"Resuming container for user={request.user_id}, project={request.project_id}"
        )
        result = await lifecycle.resume_container(request.project_id, request.user_id)
        if result.get("error") == "Sandbox recreation already in progress":
            return _respond(result, failure_status=409)
        return _respond(result)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error resuming container: {e}", exc_info=True)
        raise HTTPException(
            status_code=500, detail=f"Failed to resume container: {str(e)}"
        )


@router.post("/start-server")
async def start_server(
    request: StartServerRequest,
    lifecycle: SandboxLifecycleService = Depends(get_sandbox_lifecycle),
):
    """(Re)start the dev server on the project's sandbox"""
    try:
        logger.info(
            f"Starting server on sandbox {request.sandbox_id} "
            f"(project={request.project_id}, force={request.force})"
        )
        result = await lifecycle.start_server(
            request.sandbox_id,
            request.project_id,
            request.user_id,
            force=request.force,
        )
        return _respond(result)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error starting server: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to start server: {str(e)}")


@router.post("/check-sandbox", response_model=LivenessResponse)
async def check_sandbox(
    request: CheckSandboxRequest,
    lifecycle: SandboxLifecycleService = Depends(get_sandbox_lifecycle),
):
    """Is the sandbox alive? Never fails: errors read as not alive."""
    try:
        result = await lifecycle.check_sandbox(request.sandbox_id)
    except Exception as e:
        logger.error(f"Error checking sandbox {request.sandbox_id}: {e}", exc_info=True)
        result = {"isAlive": False, "reason": str(e)}
    return JSONResponse(status_code=200, content=LivenessResponse(**result).model_dump())


@router.post("/check-expo-server", response_model=LivenessResponse)
async def check_expo_server(
    request: CheckServerRequest,
    lifecycle: SandboxLifecycleService = Depends(get_sandbox_lifecycle),
):
    """Is the dev server answering? Never fails: errors read as not alive."""
    if not request.url and not request.sandbox_id:
        raise HTTPException(status_code=400, detail="Either url or sandboxId is required")
    try:
        result = await lifecycle.check_server(request.url, request.sandbox_id)
    except Exception as e:
        logger.error(f"Error checking server {request.url}: {e}", exc_info=True)
        result = {"isAlive": False, "reason": str(e)}
    return JSONResponse(
        status_code=200,
        content=LivenessResponse(
            isAlive=bool(result.get("isAlive")), reason=result.get("reason")
        ).model_dump(),
    )


@router.post("/sandbox-status", response_model=SandboxStatusResponse)
async def sandbox_status(
    request: ProjectRequest,
    lifecycle: SandboxLifecycleService = Depends(get_sandbox_lifecycle),
):
    """Whether the project's sandbox is still within its lifetime"""
    try:
        result = await lifecycle.sandbox_status(request.project_id, request.user_id)
        if not result.get("success"):
            return _respond(result)
        return JSONResponse(
            status_code=200, content=SandboxStatusResponse(**result).model_dump()
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting sandbox status: {e}", exc_info=True)
        raise HTTPException(
            status_code=500, detail=f"Failed to get sandbox status: {str(e)}"
        )


@router.post("/destroy-container")
async def destroy_container(
    request: ProjectRequest,
    lifecycle: SandboxLifecycleService = Depends(get_sandbox_lifecycle),
):
    """Kill the project's sandbox and mark it destroyed"""
    try:
        logger.info(
            f"Destroying container for user={request.user_id}, project={request.project_id}"
        )
        result = await lifecycle.destroy_container(request.project_id, request.user_id)
        return _respond(result)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error destroying container: {e}", exc_info=True)
        raise HTTPException(
            status_code=500, detail=f"Failed to destroy container: {str(e)}"
        )


@router.post("/project-state")
async def project_state(
    request: ProjectRequest,
    lifecycle: SandboxLifecycleService = Depends(get_sandbox_lifecycle),
):
    """Current project record, as ``{success, project}``"""
    try:
        record = await lifecycle.store.get_for_user(request.project_id, request.user_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return JSONResponse(
            status_code=200, content={"success": True, "project": record.to_dict()}
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error reading project state: {e}", exc_info=True)
        raise HTTPException(
            status_code=500, detail=f"Failed to read project state: {str(e)}"
        )
