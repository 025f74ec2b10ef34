"""
Agent runtime web server.
FastAPI surface over a SessionManager: submit, cancel, resume, inspect and git sync.

Run:  python -m web [--port 8765] [--root /path/to/projects]
"""

import logging

from fastapi import FastAPI

from agent.manager import SessionManager
from config import app_config
from web import api_git, api_sessions

logger = logging.getLogger(__name__)


# ============================================================
# FastAPI application
# ============================================================

def create_app(manager: SessionManager) -> FastAPI:
    app = FastAPI(title=app_config.title)
    app.state.manager = manager

    @app.on_event("shutdown")
    async def _on_shutdown():
        """Cancel in-flight turns and persist every session before the server exits."""
        await manager.cleanup()
        logger.info("Shutdown: sessions cleaned up")

    app.include_router(api_sessions.router)
    app.include_router(api_git.router)
    return app
