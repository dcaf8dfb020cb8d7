# petalhop/api/v1/agent.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ...core.connect import ConnectService
from ...core.exceptions import AuthError, ConflictError, HubError
from ...schemas import ConnectRequest, ConnectResponse, ForwardSummary
from ..deps import http_error

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Agent"])


def get_connect_service(request: Request) -> ConnectService:
    return request.app.state.connect_service


@router.post("/connect", response_model=ConnectResponse)
async def connect_agent(
    body: ConnectRequest,
    service: ConnectService = Depends(get_connect_service),
):
    """Activate with a setup token, or reconnect with an already registered public key"""
    try:
        result = await service.connect(body.setup_token, body.public_key)
    except ConflictError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "Agent already active with different key", "error_code": "CONFLICT"},
        )
    except AuthError:
        # Same answer for unknown token, consumed token and unknown key
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Invalid or expired token", "error_code": "UNAUTHORIZED"},
        )
    except HubError as e:
        raise http_error(e)

    logger.info(f"Connect hit for peer {result.peer_id} (activated={result.activated})")

    return ConnectResponse(
        peer_id=result.peer_id,
        assigned_address=result.assigned_address,
        hub_public_key=result.hub_public_key,
        hub_endpoint=result.hub_endpoint,
        forwards=[ForwardSummary(**f) for f in result.forwards],
    )
