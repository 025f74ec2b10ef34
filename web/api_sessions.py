"""
Session REST API endpoints.

Handles submitting messages, cancel/resume, session snapshots, rollback, reset, archives and disposal.
"""

import base64
import binascii
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from message_queue import Attachment
from web.state import error_response, get_manager

logger = logging.getLogger(__name__)

router = APIRouter()


def _parse_attachments(raw: Any) -> List[Attachment]:
    if not raw:
        return []
    if not isinstance(raw, list):
        raise ValueError("attachments must be a list")
    attachments = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("name"):
            raise ValueError("each attachment needs a name")
        try:
            data = base64.b64decode(item.get("data") or "", validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"attachment {item['name']!r} is not valid base64: {e}")
        attachments.append(Attachment(
            name=str(item["name"]),
            data=data,
            media_type=item.get("media_type") or "application/octet-stream",
        ))
    return attachments


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


@router.get("/api/projects")
async def api_projects(request: Request):
    manager = get_manager(request)
    result = {
        "projects": manager.project_ids(),
        "running": manager.running_project_ids(),
    }
    if manager.store is not None:
        result["stored"] = [p.get("project_id") for p in manager.store.list_projects()]
    return result


@router.post("/api/projects/{project_id}/messages")
async def api_submit_message(project_id: str, request: Request):
    body = await _json_body(request)
    try:
        attachments = _parse_attachments(body.get("attachments"))
        session = await get_manager(request).get_or_create(project_id)
        started = session.submit(str(body.get("content") or ""), attachments)
    except Exception as e:
        return error_response(e)
    return JSONResponse(
        {"ok": True, "started": started, "state": session.state.value, "queue_size": session.queue.size},
        status_code=202,
    )


@router.post("/api/projects/{project_id}/cancel")
async def api_cancel(project_id: str, request: Request):
    session = get_manager(request).get(project_id)
    if session is None:
        return {"ok": True, "cancelled": False}
    cancelled = await session.cancel()
    return {"ok": True, "cancelled": cancelled, "state": session.state.value}


@router.post("/api/projects/{project_id}/resume")
async def api_resume(project_id: str, request: Request):
    try:
        session = await get_manager(request).get_or_create(project_id)
        started = session.resume()
    except Exception as e:
        return error_response(e)
    return {"ok": True, "started": started, "state": session.state.value}


@router.post("/api/projects/{project_id}/rollback")
async def api_rollback(project_id: str, request: Request):
    body = await _json_body(request)
    try:
        turns = int(body.get("turns", 1))
        session = await get_manager(request).get_or_create(project_id)
        removed = session.rollback(turns)
    except Exception as e:
        return error_response(e)
    return {"ok": True, "removed": removed, "history_length": len(session.history)}


@router.post("/api/projects/{project_id}/reset")
async def api_reset(project_id: str, request: Request):
    try:
        session = await get_manager(request).get_or_create(project_id)
        archived = session.reset()
    except Exception as e:
        return error_response(e)
    return {"ok": True, "archived": archived}


@router.get("/api/projects/{project_id}/archives")
async def api_list_archives(project_id: str, request: Request):
    store = get_manager(request).store
    return {"ok": True, "archives": store.list_archives(project_id) if store is not None else []}


@router.get("/api/projects/{project_id}/archives/{name}")
async def api_get_archive(project_id: str, name: str, request: Request):
    store = get_manager(request).store
    try:
        if store is None:
            raise FileNotFoundError("Session persistence is disabled")
        messages = store.load_archive(project_id, name)
    except Exception as e:
        return error_response(e)
    return {"ok": True, "name": name, "history": messages}


@router.get("/api/projects/{project_id}/session")
async def api_get_session(project_id: str, request: Request):
    try:
        session = await get_manager(request).get_or_create(project_id)
    except Exception as e:
        return error_response(e)
    return session.to_dict()


@router.delete("/api/projects/{project_id}/session")
async def api_dispose_session(project_id: str, request: Request, forget: bool = False):
    """Dispose the live session. forget=true also deletes its stored history and queue."""
    manager = get_manager(request)
    disposed = await manager.dispose(project_id)
    deleted = False
    if forget and manager.store is not None:
        deleted = manager.store.delete(project_id)
    return {"ok": True, "disposed": disposed, "deleted": deleted}
