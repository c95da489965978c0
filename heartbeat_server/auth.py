# heartbeat_server/auth.py
import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from heartbeat_server.conf import HeartbeatSettings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
HEARTBEAT_TOKEN_HEADER = "X-Heartbeat-Token"


class HeartbeatAccessError(HTTPException):
    """Heartbeat request rejected by token or IP checks; rendered as {"error": detail}."""


def get_settings(request: Request) -> HeartbeatSettings:
    """Settings loaded at startup and attached to the app."""
    return request.app.state.settings


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def verify_api_key(request: Request, api_key: Optional[str] = Header(None, alias=API_KEY_HEADER)) -> str:
    """
    Verify API key from request header.

    Raises HTTPException if key is missing or invalid.
    """
    expected_key = get_settings(request).api_key

    if not expected_key:
        # If no API key is configured, allow all requests (development mode)
        return ""

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {API_KEY_HEADER} header",
        )

    if not hmac.compare_digest(api_key, expected_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


def verify_heartbeat_token(
    request: Request, token: Optional[str] = Header(None, alias=HEARTBEAT_TOKEN_HEADER)
) -> None:
    """
    Verify the heartbeat token when heartbeat authentication is enabled.

    Raises HeartbeatAccessError(401) if the token is missing, wrong, or not configured.
    """
    settings = get_settings(request)
    if not settings.authentication_enabled:
        return

    expected = settings.authentication_token
    if not expected or not token or not hmac.compare_digest(token, expected):
        logger.warning(
            "Heartbeat authentication failed from %s at %s",
            _client_ip(request),
            datetime.now(timezone.utc).isoformat(),
        )
        raise HeartbeatAccessError(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def check_ip_whitelist(request: Request) -> None:
    """
    Reject heartbeat callers outside the IP whitelist when whitelisting is enabled.

    Raises HeartbeatAccessError(403) for addresses that match no entry.
    """
    settings = get_settings(request)
    if not settings.ip_whitelisting_enabled:
        return

    source_ip = _client_ip(request)
    if not settings.ip_allowed(source_ip):
        logger.warning(
            "Heartbeat IP whitelist rejection: %s at %s",
            source_ip,
            datetime.now(timezone.utc).isoformat(),
        )
        raise HeartbeatAccessError(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
