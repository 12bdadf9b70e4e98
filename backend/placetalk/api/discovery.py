"""REST API surface for proximity discovery."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from placetalk.domain.discovery.schemas import HeartbeatRequest, HeartbeatResponse
from placetalk.domain.pins import container
from placetalk.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/discovery", tags=["discovery"])


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    payload: HeartbeatRequest,
    auth_user: AuthenticatedUser = Depends(get_current_user),
) -> HeartbeatResponse:
    result = await container.get_engine().process_heartbeat(auth_user.id, payload.lat, payload.lon)
    return HeartbeatResponse.from_result(result)
