"""
Git-related REST API endpoints.

Handles git status and the fetch/pull/push sync operations for a project.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from web.state import error_response, get_manager

logger = logging.getLogger(__name__)

router = APIRouter()

_SYNC_OPERATIONS = ("fetch", "pull", "push")


async def _git_context(project_id: str, request: Request):
    session = await get_manager(request).get_or_create(project_id)
    return session, session.executor.context


@router.get("/api/projects/{project_id}/git/status")
async def api_git_status(project_id: str, request: Request):
    try:
        _, ctx = await _git_context(project_id, request)
        if ctx.git is None or not await ctx.git.is_repository(ctx.project_dir):
            return {"ok": True, "is_repo": False}
        status = await ctx.git.status(ctx.project_dir)
    except Exception as e:
        return error_response(e)
    return dict(
        status.to_dict(),
        ok=True,
        is_repo=True,
        active_operation=ctx.git.active_operation(ctx.project_dir),
    )


@router.post("/api/projects/{project_id}/git/{operation}")
async def api_git_sync(project_id: str, operation: str, request: Request, auto: bool = False):
    """Run fetch, pull or push. auto=true is a background sync and is skipped while the agent is busy."""
    if operation not in _SYNC_OPERATIONS:
        return JSONResponse({"ok": False, "error": f"Unknown git operation: {operation}"}, status_code=404)
    try:
        session, ctx = await _git_context(project_id, request)
        if ctx.git is None:
            return JSONResponse({"ok": False, "error": "Git is not configured for this project"}, status_code=400)
        if auto and session.is_running:
            logger.info(f"Skipping auto-{operation} for {project_id}: agent is running")
            return {"ok": True, "skipped": True, "operation": operation}
        await getattr(ctx.git, operation)(ctx.project_dir)
    except Exception as e:
        return error_response(e)
    return {"ok": True, "skipped": False, "operation": operation}
