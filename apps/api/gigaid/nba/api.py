from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from gigaid.context import get_correlation_id
from gigaid.core.auth import AuthUser, get_current_user, require_user_id
from gigaid.core.database import get_db
from gigaid.nba.schemas import NextActionRead, RespondTapRead
from gigaid.nba.service import ActionNotFoundError, LeadNotFoundError, next_action_service


router = APIRouter(prefix="/api", tags=["next-actions"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.__dict__)


@router.get("/next-actions", response_model=list[NextActionRead])
def list_next_actions(
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[NextActionRead]:
    return next_action_service.list_for_user(db, require_user_id(user))


@router.post("/next-actions/{action_id}/act", response_model=NextActionRead)
def act_on_next_action(
    action_id: uuid.UUID,
    request: Request,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_id = require_user_id(user)
    try:
        return next_action_service.act(db, user_id, action_id)
    except ActionNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="NEXT_ACTION_NOT_FOUND",
            message=str(exc),
        )


@router.post("/next-actions/{action_id}/dismiss", response_model=NextActionRead)
def dismiss_next_action(
    action_id: uuid.UUID,
    request: Request,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_id = require_user_id(user)
    try:
        return next_action_service.dismiss(db, user_id, action_id)
    except ActionNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="NEXT_ACTION_NOT_FOUND",
            message=str(exc),
        )


@router.post("/leads/{lead_id}/respond-tap", response_model=RespondTapRead)
def record_respond_tap(
    lead_id: uuid.UUID,
    request: Request,
    user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_id = require_user_id(user)
    try:
        return next_action_service.record_respond_tap(db, user_id, lead_id)
    except LeadNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="LEAD_NOT_FOUND",
            message=str(exc),
        )
