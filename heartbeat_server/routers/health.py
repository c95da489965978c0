# heartbeat_server/routers/health.py
from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
def health():
    """Liveness check."""
    return {"status": "ok"}
