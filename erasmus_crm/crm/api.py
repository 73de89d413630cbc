from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from erasmus_crm.context import get_correlation_id
from erasmus_crm.core.auth import AuthUser, get_optional_user
from erasmus_crm.core.database import get_db
from erasmus_crm.crm.schemas import (
    ActivityCreate,
    ActivityListOptions,
    ActivityRead,
    ActivityStatus,
    ActivityUpdate,
    CompanyCreate,
    CompanyListOptions,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactListOptions,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealListOptions,
    DealRead,
    DealUpdate,
)
from erasmus_crm.crm.service import ActivityService, ActorUser, CompanyService, ContactService, DealService

contacts_router = APIRouter(prefix="/api/crm/contacts", tags=["crm.contacts"])
companies_router = APIRouter(prefix="/api/crm/companies", tags=["crm.companies"])
deals_router = APIRouter(prefix="/api/crm/deals", tags=["crm.deals"])
activities_router = APIRouter(prefix="/api/crm/activities", tags=["crm.activities"])
contact_service = ContactService()
company_service = CompanyService()
deal_service = DealService()
activity_service = ActivityService()


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
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException, code: str, db: Session | None) -> JSONResponse:
    if db is not None:
        db.rollback()
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(auth_user: AuthUser | None = Depends(get_optional_user)) -> ActorUser | None:
    if auth_user is None:
        return None
    return ActorUser(
        id=auth_user.id,
        name=auth_user.name,
        email=auth_user.email,
        role=auth_user.role,
    )


def require_user(user: ActorUser | None) -> ActorUser:
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return user


# contacts


@contacts_router.get("", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    search: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    statuses: list[str] | None = Query(default=None),
    sources: list[str] | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1),
    offset: int = Query(default=0, ge=0),
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        actor = require_user(user)
        options = ContactListOptions(
            search=search,
            status=status_filter,
            statuses=statuses,
            sources=sources,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
        return contact_service.list_contacts(db, actor, options)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_list_failed", db)


@contacts_router.get("/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: int,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_user(user)
        return contact_service.get_contact(db, contact_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_get_failed", db)


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.create_contact(db, require_user(user), dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_create_failed", db)


@contacts_router.patch("/{contact_id}", response_model=ContactRead)
def patch_contact(
    request: Request,
    contact_id: int,
    dto: ContactUpdate,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_user(user)
        return contact_service.update_contact(db, contact_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_update_failed", db)


@contacts_router.delete("/{contact_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_contact(
    request: Request,
    contact_id: int,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> Any:
    try:
        require_user(user)
        contact_service.delete_contact(db, contact_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_delete_failed", db)


# companies


@companies_router.get("", response_model=list[CompanyRead])
def list_companies(
    request: Request,
    search: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1),
    offset: int = Query(default=0, ge=0),
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> list[CompanyRead] | JSONResponse:
    try:
        actor = require_user(user)
        options = CompanyListOptions(search=search, limit=limit, offset=offset)
        return company_service.list_companies(db, actor, options)
    except HTTPException as exc:
        return _failed(request, exc, "crm_company_list_failed", db)


@companies_router.get("/{company_id}", response_model=CompanyRead)
def get_company(
    request: Request,
    company_id: int,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_user(user)
        return company_service.get_company(db, company_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_company_get_failed", db)


@companies_router.post("", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        return company_service.create_company(db, require_user(user), dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_company_create_failed", db)


@companies_router.patch("/{company_id}", response_model=CompanyRead)
def patch_company(
    request: Request,
    company_id: int,
    dto: CompanyUpdate,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_user(user)
        return company_service.update_company(db, company_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_company_update_failed", db)


@companies_router.delete("/{company_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_company(
    request: Request,
    company_id: int,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> Any:
    try:
        require_user(user)
        company_service.delete_company(db, company_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_company_delete_failed", db)


# deals


@deals_router.get("", response_model=list[DealRead])
def list_deals(
    request: Request,
    stage: str | None = Query(default=None),
    stages: list[str] | None = Query(default=None),
    value_min: Decimal | None = Query(default=None),
    value_max: Decimal | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1),
    offset: int = Query(default=0, ge=0),
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        actor = require_user(user)
        options = DealListOptions(
            stage=stage,
            stages=stages,
            value_min=value_min,
            value_max=value_max,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
        return deal_service.list_deals(db, actor, options)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_list_failed", db)


@deals_router.get("/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: int,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_user(user)
        return deal_service.get_deal(db, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_get_failed", db)


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.create_deal(db, require_user(user), dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_create_failed", db)


@deals_router.patch("/{deal_id}", response_model=DealRead)
def patch_deal(
    request: Request,
    deal_id: int,
    dto: DealUpdate,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.update_deal(db, require_user(user), deal_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_update_failed", db)


@deals_router.delete("/{deal_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_deal(
    request: Request,
    deal_id: int,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> Any:
    try:
        require_user(user)
        deal_service.delete_deal(db, deal_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_delete_failed", db)


# activities


@activities_router.get("", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    type_filter: str | None = Query(default=None, alias="type"),
    types: list[str] | None = Query(default=None),
    contact_id: int | None = Query(default=None),
    company_id: int | None = Query(default=None),
    deal_id: int | None = Query(default=None),
    is_completed: bool | None = Query(default=None),
    status_filter: ActivityStatus | None = Query(default=None, alias="status"),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1),
    offset: int = Query(default=0, ge=0),
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        actor = require_user(user)
        options = ActivityListOptions(
            type=type_filter,
            types=types,
            contact_id=contact_id,
            company_id=company_id,
            deal_id=deal_id,
            is_completed=is_completed,
            status=status_filter,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
        return activity_service.list_activities(db, actor, options)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_list_failed", db)


@activities_router.get("/{activity_id}", response_model=ActivityRead)
def get_activity(
    request: Request,
    activity_id: int,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_user(user)
        return activity_service.get_activity(db, activity_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_get_failed", db)


@activities_router.post("", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    request: Request,
    dto: ActivityCreate,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.create_activity(db, require_user(user), dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_create_failed", db)


@activities_router.patch("/{activity_id}", response_model=ActivityRead)
def patch_activity(
    request: Request,
    activity_id: int,
    dto: ActivityUpdate,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_user(user)
        return activity_service.update_activity(db, activity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_update_failed", db)


@activities_router.post("/{activity_id}/complete", response_model=ActivityRead)
def complete_activity(
    request: Request,
    activity_id: int,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_user(user)
        return activity_service.complete_activity(db, activity_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_complete_failed", db)


@activities_router.delete("/{activity_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_activity(
    request: Request,
    activity_id: int,
    db: Session | None = Depends(get_db),
    user: ActorUser | None = Depends(get_current_user),
) -> Any:
    try:
        require_user(user)
        activity_service.delete_activity(db, activity_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_delete_failed", db)
