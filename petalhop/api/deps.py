# petalhop/api/deps.py
"""Shared FastAPI dependencies and error mapping"""

import logging

from fastapi import Header, HTTPException, Request, status

from ..core.exceptions import AuthError, ConflictError, HubError, ValidationError

logger = logging.getLogger(__name__)


def get_db(request: Request):
    """One session per request from the app's session factory"""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_store(request: Request):
    return request.app.state.store


async def verify_admin_token(
    request: Request,
    x_admin_token: str = Header(..., alias="X-Admin-Token"),
):
    """
    Verify admin authentication token

    In production, replace with proper session authentication
    """
    if x_admin_token != request.app.state.settings.ADMIN_SECRET:
        logger.warning("Invalid admin token attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "Invalid or missing admin token",
                "error_code": "UNAUTHORIZED",
            },
        )
    return True


def http_error(exc: HubError) -> HTTPException:
    """Map a core error onto an HTTP response"""
    if isinstance(exc, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, AuthError):
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(exc, ValidationError):
        code = getattr(exc, "http_status", status.HTTP_400_BAD_REQUEST)
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR

    return HTTPException(
        status_code=code,
        detail={"error": str(exc), "error_code": exc.error_code},
    )
