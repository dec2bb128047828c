"""
Preview API Routes

Server-side preview sessions: open a project's preview, read its session,
issue the UI commands (retry, restart server, visibility) and stream its
events over SSE.
"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from services.preview_backend import LocalPreviewBackend
from services.preview_registry import PreviewRegistry
from services.preview_session import (
    IncarnationChanged,
    PreviewController,
    PreviewClosed,
    PreviewEvent,
    PreviewReloadRequested,
    SessionChanged,
)
from services.sandbox_lifecycle import get_sandbox_lifecycle

logger = logging.getLogger("api.preview")

router = APIRouter(prefix="/api/preview", tags=["preview"])

# keep-alive comment interval for idle event streams
SSE_KEEPALIVE_SECONDS = 15.0


# =============================================================================
# REQUEST MODELS
# =============================================================================


class OpenPreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId", description="Project ID")
    user_id: str = Field(..., alias="userID", description="User ID")


class VisibilityRequest(BaseModel):
    visible: bool = Field(..., description="Whether the preview is on screen")


# =============================================================================
# REGISTRY
# =============================================================================

_registry: Optional[PreviewRegistry] = None


def _build_controller(project_id: str, user_id: str) -> PreviewController:
    return PreviewController(
        project_id, user_id, LocalPreviewBackend(get_sandbox_lifecycle())
    )


def get_preview_registry() -> PreviewRegistry:
    """Get the global preview registry"""
    global _registry
    if _registry is None:
        _registry = PreviewRegistry(_build_controller)
    return _registry


async def close_preview_registry():
    global _registry
    if _registry is not None:
        await _registry.close_all()
        _registry = None


def _require(
    registry: PreviewRegistry, user_id: str, project_id: str
) -> PreviewController:
    controller = registry.get(user_id, project_id)
    if controller is None:
        raise HTTPException(status_code=404, detail="Preview not open")
    return controller


# =============================================================================
# SSE HELPERS
# =============================================================================


def format_sse_event(event_type: str, data: dict) -> str:
    """Format Server-Sent Event."""
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


def event_to_sse(event: PreviewEvent) -> str:
    if isinstance(event, SessionChanged):
        return format_sse_event("session", event.session.to_dict())
    if isinstance(event, IncarnationChanged):
        return format_sse_event(
            "incarnation_changed",
            {
                "projectId": event.project_id,
                "oldSandboxId": event.old_sandbox_id,
                "newSandboxId": event.new_sandbox_id,
                "at": event.at.isoformat(),
            },
        )
    if isinstance(event, PreviewReloadRequested):
        return format_sse_event(
            "reload",
            {
                "projectId": event.project_id,
                "sandboxId": event.sandbox_id,
                "at": event.at.isoformat(),
            },
        )
    if isinstance(event, PreviewClosed):
        return format_sse_event("closed", {"projectId": event.project_id})
    raise TypeError(f"Unknown preview event: {type(event).__name__}")


# =============================================================================
# API ENDPOINTS
# =============================================================================


@router.post("/open")
async def open_preview(
    request: OpenPreviewRequest,
    registry: PreviewRegistry = Depends(get_preview_registry),
):
    """Open (or join) the preview for a project and start health monitoring"""
    try:
        controller = await registry.get_or_open(request.user_id, request.project_id)
        return JSONResponse(status_code=200, content=controller.session.to_dict())

    except LookupError:
        raise HTTPException(status_code=404, detail="Project not found")
    except Exception as e:
        logger.error(f"Error opening preview: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to open preview: {str(e)}")


@router.get("/{project_id}")
async def get_preview(
    project_id: str,
    user_id: str = Query(..., alias="userID"),
    registry: PreviewRegistry = Depends(get_preview_registry),
):
    controller = _require(registry, user_id, project_id)
    return JSONResponse(status_code=200, content=controller.session.to_dict())


@router.post("/{project_id}/retry")
async def retry_preview(
    project_id: str,
    user_id: str = Query(..., alias="userID"),
    registry: PreviewRegistry = Depends(get_preview_registry),
):
    """'Try Again' after recovery gave up. No-op if the preview has not failed."""
    controller = _require(registry, user_id, project_id)
    accepted = await controller.request_manual_retry()
    return JSONResponse(
        status_code=200,
        content={"accepted": accepted, "session": controller.session.to_dict()},
    )


@router.post("/{project_id}/restart-server")
async def restart_preview_server(
    project_id: str,
    user_id: str = Query(..., alias="userID"),
    registry: PreviewRegistry = Depends(get_preview_registry),
):
    controller = _require(registry, user_id, project_id)
    accepted = await controller.request_restart_server()
    return JSONResponse(
        status_code=200,
        content={"accepted": accepted, "session": controller.session.to_dict()},
    )


@router.post("/{project_id}/visibility")
async def set_preview_visibility(
    project_id: str,
    request: VisibilityRequest,
    user_id: str = Query(..., alias="userID"),
    registry: PreviewRegistry = Depends(get_preview_registry),
):
    controller = _require(registry, user_id, project_id)
    controller.on_visibility_change(request.visible)
    return JSONResponse(status_code=200, content={"visible": request.visible})


@router.delete("/{project_id}")
async def close_preview(
    project_id: str,
    user_id: str = Query(..., alias="userID"),
    registry: PreviewRegistry = Depends(get_preview_registry),
):
    """Stop monitoring the preview"""
    closed = await registry.close(user_id, project_id)
    if not closed:
        raise HTTPException(status_code=404, detail="Preview not open")
    return JSONResponse(status_code=200, content={"success": True})


@router.get("/{project_id}/events")
async def preview_events(
    project_id: str,
    user_id: str = Query(..., alias="userID"),
    registry: PreviewRegistry = Depends(get_preview_registry),
):
    """Server-Sent Events for one preview; the stream ends with `closed` on teardown"""
    controller = _require(registry, user_id, project_id)
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = controller.subscribe(queue.put_nowait)

    async def generate():
        try:
            yield format_sse_event("session", controller.session.to_dict())
            while True:
                try:
                    event = await asyncio.wait_for(
                        queue.get(), timeout=SSE_KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    if controller.closed:
                        break
                    yield ": keep-alive\n\n"
                    continue
                yield event_to_sse(event)
                if isinstance(event, PreviewClosed):
                    break
        finally:
            unsubscribe()

    return StreamingResponse(generate(), media_type="text/event-stream")
