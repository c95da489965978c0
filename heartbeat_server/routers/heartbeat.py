# heartbeat_server/routers/heartbeat.py
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from dataflows.exceptions import ClaimError
from heartbeat_server.auth import HeartbeatAccessError, check_ip_whitelist, get_settings, verify_heartbeat_token
from heartbeat_server.schemas.heartbeat import HeartbeatErrorResponse, HeartbeatResponse
from heartbeat_server.services.dispatcher import run_cycle

logger = logging.getLogger(__name__)


def heartbeat_endpoint(request: Request):
    """Run one heartbeat cycle: claim and execute every due flow."""
    settings = get_settings(request)
    try:
        report = run_cycle(max_workers=settings.max_workers, claim_ttl_seconds=settings.claim_ttl_seconds)
    except ClaimError as e:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": e.message})
    except Exception as e:
        logger.error("Heartbeat cycle failed: %s", e, exc_info=True)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(e)})

    return HeartbeatResponse(**report.to_dict())


async def heartbeat_access_error_handler(request: Request, exc: HeartbeatAccessError) -> JSONResponse:
    """Render heartbeat rejections with the same error body as cycle failures."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


def build_router(endpoint_path: str) -> APIRouter:
    """Heartbeat router mounted at the configured endpoint path."""
    router = APIRouter()
    router.add_api_route(
        endpoint_path,
        heartbeat_endpoint,
        methods=["POST"],
        response_model=HeartbeatResponse,
        responses={500: {"model": HeartbeatErrorResponse}},
        dependencies=[Depends(check_ip_whitelist), Depends(verify_heartbeat_token)],
        name="heartbeat",
    )
    return router
