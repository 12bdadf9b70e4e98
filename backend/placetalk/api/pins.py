"""REST API surface for pins, pin interactions and notification preferences."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from placetalk.domain.pins import container
from placetalk.domain.pins.models import InteractionKind, TtlPolicy
from placetalk.domain.pins.schemas import CountersOut, NotifyPreferenceOut, PinCreateRequest, PinOut
from placetalk.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/pins", tags=["pins"])


@router.post("", response_model=PinOut, status_code=status.HTTP_201_CREATED)
async def create_pin(
    payload: PinCreateRequest,
    auth_user: AuthenticatedUser = Depends(get_current_user),
) -> PinOut:
    policy = None
    if payload.ttl_hours is not None:
        policy = TtlPolicy.never() if payload.ttl_hours == 0 else TtlPolicy.from_hours(payload.ttl_hours)
    pin = await container.get_pin_service().create_pin(
        auth_user.id,
        payload.lat,
        payload.lon,
        payload.category,
        policy,
        title=payload.title,
        directions=payload.directions,
        details=payload.details,
        visible_from=payload.visible_from,
        visible_to=payload.visible_to,
    )
    return PinOut.from_pin(pin)


@router.get("/mine", response_model=List[PinOut])
async def list_my_pins(auth_user: AuthenticatedUser = Depends(get_current_user)) -> List[PinOut]:
    pins = await container.get_pin_service().list_user_pins(auth_user.id)
    return [PinOut.from_pin(pin) for pin in pins]


@router.get("/preferences", response_model=List[NotifyPreferenceOut])
async def list_my_preferences(auth_user: AuthenticatedUser = Depends(get_current_user)) -> List[NotifyPreferenceOut]:
    prefs = await container.get_notify_service().list_for_user(auth_user.id)
    return [
        NotifyPreferenceOut(pin_id=pref.pin_id, is_muted=pref.is_muted, next_notify_at=pref.next_notify_at)
        for pref in prefs
    ]


@router.get("/{pin_id}", response_model=PinOut)
async def get_pin(pin_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> PinOut:
    pin = await container.get_pin_service().get_pin(pin_id)
    return PinOut.from_pin(pin)


@router.delete("/{pin_id}", response_model=PinOut)
async def delete_pin(pin_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> PinOut:
    pin = await container.get_pin_service().delete_pin(auth_user.id, pin_id)
    return PinOut.from_pin(pin)


async def _interact(pin_id: str, kind: InteractionKind, user: AuthenticatedUser) -> CountersOut:
    counters = await container.get_interaction_service().record_interaction(user.id, pin_id, kind)
    return CountersOut.from_counters(counters)


@router.post("/{pin_id}/like", response_model=CountersOut)
async def like_pin(pin_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> CountersOut:
    return await _interact(pin_id, InteractionKind.LIKE, auth_user)


@router.post("/{pin_id}/unlike", response_model=CountersOut)
async def unlike_pin(pin_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> CountersOut:
    return await _interact(pin_id, InteractionKind.UNLIKE, auth_user)


@router.post("/{pin_id}/report", response_model=CountersOut)
async def report_pin(pin_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> CountersOut:
    return await _interact(pin_id, InteractionKind.REPORT, auth_user)


@router.post("/{pin_id}/unreport", response_model=CountersOut)
async def unreport_pin(pin_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> CountersOut:
    return await _interact(pin_id, InteractionKind.UNREPORT, auth_user)


@router.post("/{pin_id}/hide", response_model=CountersOut)
async def hide_pin(pin_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> CountersOut:
    counters = await container.get_interaction_service().hide_pin(auth_user.id, pin_id)
    return CountersOut.from_counters(counters)


async def _require_pin(pin_id: str) -> None:
    await container.get_pin_service().get_pin(pin_id)


@router.post("/{pin_id}/mark-good", response_model=NotifyPreferenceOut)
async def mark_good(pin_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> NotifyPreferenceOut:
    await _require_pin(pin_id)
    pref = await container.get_notify_service().mark_good(auth_user.id, pin_id)
    return NotifyPreferenceOut(pin_id=pin_id, is_muted=pref.is_muted, next_notify_at=pref.next_notify_at)


@router.post("/{pin_id}/mark-bad", response_model=NotifyPreferenceOut)
async def mark_bad(pin_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> NotifyPreferenceOut:
    await _require_pin(pin_id)
    pref = await container.get_notify_service().mark_bad(auth_user.id, pin_id)
    return NotifyPreferenceOut(pin_id=pin_id, is_muted=pref.is_muted, next_notify_at=pref.next_notify_at)


@router.post("/{pin_id}/unmute", response_model=NotifyPreferenceOut)
async def unmute(pin_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> NotifyPreferenceOut:
    await _require_pin(pin_id)
    pref = await container.get_notify_service().unmute(auth_user.id, pin_id)
    return NotifyPreferenceOut(pin_id=pin_id, is_muted=pref.is_muted, next_notify_at=pref.next_notify_at)
