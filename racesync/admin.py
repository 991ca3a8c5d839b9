from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from . import auth, services
from .auth import AuthResult, chief_judge_required, require_auth
from .db import get_session
from .errors import ValidationError
from .schemas import PinChange, PinReset, TokenRequest

router = APIRouter()


@router.post("/api/v1/auth/token")
def auth_token(body: TokenRequest, session: Session = Depends(get_session)):
    return auth.issue_token(session, body.pin, body.role)


@router.get("/api/v1/admin/races", dependencies=[Depends(require_auth)])
def admin_races(session: Session = Depends(get_session)):
    return {"races": services.list_races(session)}


@router.delete("/api/v1/admin/races")
def admin_delete_race(
    raceId: str | None = Query(default=None),
    deleteAll: str | None = Query(default=None),
    _auth: AuthResult = Depends(chief_judge_required("Race deletion")),
    session: Session = Depends(get_session),
):
    if deleteAll == "true":
        return services.delete_all_races(session)
    if not raceId:
        raise ValidationError("raceId is required (or use deleteAll=true)")
    return services.delete_race(session, raceId)


@router.get("/api/v1/admin/pin", dependencies=[Depends(require_auth)])
def admin_pin_status(session: Session = Depends(get_session)):
    return auth.pin_status(session)


@router.post("/api/v1/admin/pin")
def admin_change_pin(
    body: PinChange,
    _auth: AuthResult = Depends(chief_judge_required("PIN change")),
    session: Session = Depends(get_session),
):
    return auth.change_pin(session, body.currentPin, body.newPin)


@router.post("/api/v1/admin/reset-pin")
def admin_reset_pin(body: PinReset, session: Session = Depends(get_session)):
    return auth.reset_pins(session, body.serverPin)
