"""
Code Pilot web server.
FastAPI app streaming agent runs as server-sent events.

Run:  python -m web [--host 127.0.0.1] [--port 3000]
"""

import logging

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI

import web.state as _state
from web import api_code, api_diff, api_files, terminal

logger = logging.getLogger(__name__)

# ============================================================
# FastAPI application
# ============================================================

app = FastAPI(title="Code Pilot")


@app.on_event("startup")
async def _on_startup():
    _state.registry.start_reaper()


@app.on_event("shutdown")
async def _on_shutdown():
    """Stop the idle reaper and tear down every sandbox still registered."""
    await _state.registry.stop_reaper()
    try:
        await _state.registry.cleanup_all()
    except Exception as exc:
        logger.error(f"Shutdown: session cleanup failed: {exc}")


@app.get("/api/health")
async def health():
    return {"status": "ok", "sessions": len(_state.registry)}


# ============================================================
# Include routers from submodules
# ============================================================

app.include_router(api_code.router)
app.include_router(api_diff.router)
app.include_router(api_files.router)
app.include_router(terminal.router)
