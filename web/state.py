"""
Shared helpers for the web routers.

The SessionManager is created by the caller of create_app() and stored on
app.state; routers reach it through get_manager() rather than a module global.
"""

import logging
from typing import Any, Dict

from fastapi import Request
from fastapi.responses import JSONResponse

from agent.manager import SessionManager
from agent.session import SessionBusyError, SessionDisposedError
from git_sync import AuthenticationRequiredError, ConcurrentOperationError, GitCommandError

logger = logging.getLogger(__name__)


def get_manager(request: Request) -> SessionManager:
    return request.app.state.manager


def error_response(exc: Exception) -> JSONResponse:
    """Map a core exception to an HTTP error body."""
    body: Dict[str, Any] = {"ok": False, "error": str(exc)}
    if isinstance(exc, ConcurrentOperationError):
        body["error"] = "Sync already in progress"
        body["active_operation"] = exc.active_operation
        return JSONResponse(body, status_code=409)
    if isinstance(exc, AuthenticationRequiredError):
        body["origin"] = exc.origin
        return JSONResponse(body, status_code=401)
    if isinstance(exc, (SessionBusyError, SessionDisposedError)):
        return JSONResponse(body, status_code=409)
    if isinstance(exc, FileNotFoundError):
        return JSONResponse(body, status_code=404)
    if isinstance(exc, GitCommandError):
        return JSONResponse(body, status_code=502)
    if isinstance(exc, ValueError):
        return JSONResponse(body, status_code=400)
    logger.exception("Unhandled error in request")
    return JSONResponse(body, status_code=500)
