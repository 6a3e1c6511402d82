from __future__ import annotations
import asyncio

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter(tags=["health"])

@router.get("/healthz", summary="Liveness probe")
def healthz():
    return {"ok": True}

@router.get("/readyz", summary="Readiness probe (database reachable)")
async def readyz(request: Request):
    sessions = request.app.state.session_factory

    def _ping() -> None:
        with sessions() as db:
            db.execute(text("SELECT 1"))

    try:
        await asyncio.to_thread(_ping)
    except SQLAlchemyError:
        return JSONResponse(status_code=503, content={"ok": False})
    return {"ok": True}
