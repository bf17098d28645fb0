from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, http_error_response, require_permission
from app.core.database import get_db
from app.platform.security.context import ActorUser
from app.quotations.schemas import QuotationFromTemplateCreate, QuotationRead
from app.quotations.service import quotation_service

router = APIRouter(prefix="/api/quotations", tags=["quotations"])


@router.post("/from-template", response_model=QuotationRead, status_code=status.HTTP_201_CREATED)
def create_quotation_from_template(
    request: Request,
    dto: QuotationFromTemplateCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuotationRead | JSONResponse:
    try:
        require_permission(user, "quotations.create")
        return quotation_service.create_from_template(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "quotation_create_failed")


@router.post("/{quotation_id}/revision", response_model=QuotationRead, status_code=status.HTTP_201_CREATED)
def create_quotation_revision(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuotationRead | JSONResponse:
    try:
        require_permission(user, "quotations.create")
        return quotation_service.create_revision(db, user, quotation_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "quotation_revision_failed")


@router.get("/{quotation_id}", response_model=QuotationRead)
def get_quotation(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuotationRead | JSONResponse:
    try:
        require_permission(user, "quotations.read")
        return quotation_service.get_quotation(db, user, quotation_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "quotation_get_failed")
