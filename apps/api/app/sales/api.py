from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, http_error_response, require_permission
from app.core.database import get_db
from app.platform.security.context import ActorUser
from app.sales.schemas import LeadActivityRead, LeadRead, StageTransitionRequest, StageTransitionResponse
from app.sales.service import lead_transition_service

router = APIRouter(prefix="/api/sales/leads", tags=["sales-leads"])


@router.post("/{lead_id}/transition", response_model=StageTransitionResponse)
def transition_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: StageTransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageTransitionResponse | JSONResponse:
    try:
        require_permission(user, "sales.leads.transition")
        return lead_transition_service.transition(db, user, lead_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_transition_failed")


@router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "sales.leads.read")
        return lead_transition_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_get_failed")


@router.get("/{lead_id}/activities", response_model=list[LeadActivityRead])
def list_lead_activities(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadActivityRead] | JSONResponse:
    try:
        require_permission(user, "sales.leads.read")
        return lead_transition_service.list_activities(db, user, lead_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "lead_activities_failed")
