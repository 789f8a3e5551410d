"""Liveness endpoint. Reports DB connectivity without exposing configuration."""
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from finplan.core.database import check_connection


router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    connected = check_connection()
    payload = {
        "ok": connected,
        "db": {"connected": connected},
        "computed_at": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if connected else 503, content=payload)
