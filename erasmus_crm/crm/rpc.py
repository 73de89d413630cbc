from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from erasmus_crm.context import get_correlation_id
from erasmus_crm.core.auth import resolve_user
from erasmus_crm.core.database import get_db
from erasmus_crm.core.rbac import ensure_admin
from erasmus_crm.crm.models import User
from erasmus_crm.crm.notifications import NotificationService, ReminderService
from erasmus_crm.crm.schemas import (
    ActivityCreate,
    ActivityListOptions,
    ActivityUpdateInput,
    CompanyCreate,
    CompanyListOptions,
    CompanyUpdateInput,
    ContactCountOptions,
    ContactCreate,
    ContactListOptions,
    ContactUpdateInput,
    DealCountOptions,
    DealCreate,
    DealListOptions,
    DealUpdateInput,
    EmailPreferencesUpdate,
    ExportRequest,
    IdInput,
    NotificationListOptions,
    NotificationRead,
    RecentActivitiesOptions,
    TagCreate,
    UserRead,
    UserRoleUpdate,
)
from erasmus_crm.crm.service import (
    ActivityService,
    ActorUser,
    CompanyService,
    ContactService,
    DashboardService,
    DealService,
    ExportService,
    TagService,
    UserService,
    to_activity_read,
)
from erasmus_crm.metrics import observe_rpc_call


logger = logging.getLogger("erasmus_crm.rpc")

ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_SUPPORTED",
    409: "CONFLICT",
    422: "BAD_REQUEST",
    503: "SERVICE_UNAVAILABLE",
}


def error_code_for(status_code: int) -> str:
    return ERROR_CODES.get(status_code, "INTERNAL_SERVER_ERROR")


@dataclass
class RpcContext:
    request: Request
    session: Session | None
    user: ActorUser | None

    @property
    def actor(self) -> ActorUser:
        if self.user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
        return self.user


@dataclass(frozen=True)
class Procedure:
    name: str
    kind: str
    access: str
    handler: Callable[[RpcContext, Any], Any]
    input_model: type[BaseModel] | None = None

    def parse_input(self, raw: Any) -> Any:
        if self.input_model is None:
            return None
        return self.input_model.model_validate({} if raw is None else raw)


@dataclass
class ProcedureRegistry:
    procedures: dict[str, Procedure] = field(default_factory=dict)

    def register(
        self,
        name: str,
        *,
        kind: str = "query",
        access: str = "protected",
        input_model: type[BaseModel] | None = None,
    ) -> Callable[[Callable[[RpcContext, Any], Any]], Callable[[RpcContext, Any], Any]]:
        if kind not in ("query", "mutation"):
            raise ValueError(f"unknown procedure kind: {kind}")
        if access not in ("public", "protected", "admin"):
            raise ValueError(f"unknown access tier: {access}")

        def decorator(handler: Callable[[RpcContext, Any], Any]) -> Callable[[RpcContext, Any], Any]:
            if name in self.procedures:
                raise ValueError(f"procedure already registered: {name}")
            self.procedures[name] = Procedure(name, kind, access, handler, input_model)
            return handler

        return decorator

    def get(self, name: str) -> Procedure | None:
        return self.procedures.get(name)

    def names(self) -> list[str]:
        return sorted(self.procedures)


registry = ProcedureRegistry()
register = registry.register

contact_service = ContactService()
company_service = CompanyService()
deal_service = DealService()
activity_service = ActivityService()
tag_service = TagService()
user_service = UserService()
dashboard_service = DashboardService()
export_service = ExportService(contact_service, company_service, deal_service, activity_service, dashboard_service)
notification_service = NotificationService()
reminder_service = ReminderService(notification_service)

SUCCESS = {"success": True}


# auth / users


@register("auth.me", access="public")
def auth_me(ctx: RpcContext, _: None) -> Any:
    if ctx.user is None:
        return None
    if ctx.session is not None:
        row = ctx.session.get(User, ctx.user.id)
        if row is not None:
            return UserRead.model_validate(row)
    return {"id": ctx.user.id, "name": ctx.user.name, "email": ctx.user.email, "role": ctx.user.role}


@register("users.list", access="admin")
def users_list(ctx: RpcContext, _: None) -> Any:
    return user_service.list_users(ctx.session, ctx.actor)


@register("users.updateRole", kind="mutation", access="admin", input_model=UserRoleUpdate)
def users_update_role(ctx: RpcContext, data: UserRoleUpdate) -> Any:
    user_service.update_role(ctx.session, ctx.actor, data.user_id, data.role)
    return SUCCESS


@register("users.getEmailPreferences")
def users_get_email_preferences(ctx: RpcContext, _: None) -> Any:
    return user_service.get_email_preferences(ctx.session, ctx.actor)


@register("users.updateEmailPreferences", kind="mutation", input_model=EmailPreferencesUpdate)
def users_update_email_preferences(ctx: RpcContext, data: EmailPreferencesUpdate) -> Any:
    user_service.update_email_preferences(ctx.session, ctx.actor, data)
    return SUCCESS


# contacts


@register("contacts.list", input_model=ContactListOptions)
def contacts_list(ctx: RpcContext, options: ContactListOptions) -> Any:
    return contact_service.list_contacts(ctx.session, ctx.actor, options)


@register("contacts.getById", input_model=IdInput)
def contacts_get(ctx: RpcContext, data: IdInput) -> Any:
    return contact_service.get_contact(ctx.session, data.id)


@register("contacts.create", kind="mutation", input_model=ContactCreate)
def contacts_create(ctx: RpcContext, data: ContactCreate) -> Any:
    return {"id": contact_service.create_contact(ctx.session, ctx.actor, data).id}


@register("contacts.update", kind="mutation", input_model=ContactUpdateInput)
def contacts_update(ctx: RpcContext, data: ContactUpdateInput) -> Any:
    contact_service.update_contact(ctx.session, data.id, data.data)
    return SUCCESS


@register("contacts.delete", kind="mutation", input_model=IdInput)
def contacts_delete(ctx: RpcContext, data: IdInput) -> Any:
    contact_service.delete_contact(ctx.session, data.id)
    return SUCCESS


@register("contacts.count", input_model=ContactCountOptions)
def contacts_count(ctx: RpcContext, options: ContactCountOptions) -> Any:
    return contact_service.count_contacts(ctx.session, ctx.actor, options.status)


@register("contacts.byStatus")
def contacts_by_status(ctx: RpcContext, _: None) -> Any:
    return dashboard_service.contacts_by_status(ctx.session)


# companies


@register("companies.list", input_model=CompanyListOptions)
def companies_list(ctx: RpcContext, options: CompanyListOptions) -> Any:
    return company_service.list_companies(ctx.session, ctx.actor, options)


@register("companies.getById", input_model=IdInput)
def companies_get(ctx: RpcContext, data: IdInput) -> Any:
    return company_service.get_company(ctx.session, data.id)


@register("companies.create", kind="mutation", input_model=CompanyCreate)
def companies_create(ctx: RpcContext, data: CompanyCreate) -> Any:
    return {"id": company_service.create_company(ctx.session, ctx.actor, data).id}


@register("companies.update", kind="mutation", input_model=CompanyUpdateInput)
def companies_update(ctx: RpcContext, data: CompanyUpdateInput) -> Any:
    company_service.update_company(ctx.session, data.id, data.data)
    return SUCCESS


@register("companies.delete", kind="mutation", input_model=IdInput)
def companies_delete(ctx: RpcContext, data: IdInput) -> Any:
    company_service.delete_company(ctx.session, data.id)
    return SUCCESS


@register("companies.count")
def companies_count(ctx: RpcContext, _: None) -> Any:
    return company_service.count_companies(ctx.session, ctx.actor)


# deals


@register("deals.list", input_model=DealListOptions)
def deals_list(ctx: RpcContext, options: DealListOptions) -> Any:
    return deal_service.list_deals(ctx.session, ctx.actor, options)


@register("deals.getById", input_model=IdInput)
def deals_get(ctx: RpcContext, data: IdInput) -> Any:
    return deal_service.get_deal(ctx.session, data.id)


@register("deals.create", kind="mutation", input_model=DealCreate)
def deals_create(ctx: RpcContext, data: DealCreate) -> Any:
    return {"id": deal_service.create_deal(ctx.session, ctx.actor, data).id}


@register("deals.update", kind="mutation", input_model=DealUpdateInput)
def deals_update(ctx: RpcContext, data: DealUpdateInput) -> Any:
    deal_service.update_deal(ctx.session, ctx.actor, data.id, data.data)
    return SUCCESS


@register("deals.delete", kind="mutation", input_model=IdInput)
def deals_delete(ctx: RpcContext, data: IdInput) -> Any:
    deal_service.delete_deal(ctx.session, data.id)
    return SUCCESS


@register("deals.count", input_model=DealCountOptions)
def deals_count(ctx: RpcContext, options: DealCountOptions) -> Any:
    return deal_service.count_deals(ctx.session, ctx.actor, options.stage)


@register("deals.pipelineStats")
def deals_pipeline_stats(ctx: RpcContext, _: None) -> Any:
    return dashboard_service.pipeline_stats(ctx.session)


# activities


@register("activities.list", input_model=ActivityListOptions)
def activities_list(ctx: RpcContext, options: ActivityListOptions) -> Any:
    return activity_service.list_activities(ctx.session, ctx.actor, options)


@register("activities.getById", input_model=IdInput)
def activities_get(ctx: RpcContext, data: IdInput) -> Any:
    return activity_service.get_activity(ctx.session, data.id)


@register("activities.create", kind="mutation", input_model=ActivityCreate)
def activities_create(ctx: RpcContext, data: ActivityCreate) -> Any:
    return {"id": activity_service.create_activity(ctx.session, ctx.actor, data).id}


@register("activities.update", kind="mutation", input_model=ActivityUpdateInput)
def activities_update(ctx: RpcContext, data: ActivityUpdateInput) -> Any:
    activity_service.update_activity(ctx.session, data.id, data.data)
    return SUCCESS


@register("activities.complete", kind="mutation", input_model=IdInput)
def activities_complete(ctx: RpcContext, data: IdInput) -> Any:
    activity_service.complete_activity(ctx.session, data.id)
    return SUCCESS


@register("activities.delete", kind="mutation", input_model=IdInput)
def activities_delete(ctx: RpcContext, data: IdInput) -> Any:
    activity_service.delete_activity(ctx.session, data.id)
    return SUCCESS


@register("activities.recent", input_model=RecentActivitiesOptions)
def activities_recent(ctx: RpcContext, options: RecentActivitiesOptions) -> Any:
    return activity_service.recent_activities(ctx.session, options.limit)


@register("activities.byType")
def activities_by_type(ctx: RpcContext, _: None) -> Any:
    return dashboard_service.activities_by_type(ctx.session)


# tags


@register("tags.list")
def tags_list(ctx: RpcContext, _: None) -> Any:
    return tag_service.list_tags(ctx.session)


@register("tags.create", kind="mutation", input_model=TagCreate)
def tags_create(ctx: RpcContext, data: TagCreate) -> Any:
    return {"id": tag_service.create_tag(ctx.session, data).id}


@register("tags.delete", kind="mutation", input_model=IdInput)
def tags_delete(ctx: RpcContext, data: IdInput) -> Any:
    tag_service.delete_tag(ctx.session, data.id)
    return SUCCESS


# dashboard / export


@register("dashboard.stats")
def dashboard_stats(ctx: RpcContext, _: None) -> Any:
    return dashboard_service.stats(ctx.session)


@register("export.contacts", kind="mutation", input_model=ExportRequest)
def export_contacts(ctx: RpcContext, data: ExportRequest) -> Any:
    return export_service.export_contacts(ctx.session, ctx.actor, data.format)


@register("export.deals", kind="mutation", input_model=ExportRequest)
def export_deals(ctx: RpcContext, data: ExportRequest) -> Any:
    return export_service.export_deals(ctx.session, ctx.actor, data.format)


@register("export.companies", kind="mutation", input_model=ExportRequest)
def export_companies(ctx: RpcContext, data: ExportRequest) -> Any:
    return export_service.export_companies(ctx.session, data.format)


@register("export.activities", kind="mutation", input_model=ExportRequest)
def export_activities(ctx: RpcContext, data: ExportRequest) -> Any:
    return export_service.export_activities(ctx.session, ctx.actor, data.format)


@register("export.dashboardReport", kind="mutation", input_model=ExportRequest)
def export_dashboard_report(ctx: RpcContext, data: ExportRequest) -> Any:
    return export_service.export_dashboard_report(ctx.session, data.format)


# notifications


@register("notifications.list", input_model=NotificationListOptions)
def notifications_list(ctx: RpcContext, options: NotificationListOptions) -> Any:
    rows = notification_service.list(ctx.session, ctx.actor.id, options)
    return [NotificationRead.model_validate(row) for row in rows]


@register("notifications.unreadCount")
def notifications_unread_count(ctx: RpcContext, _: None) -> Any:
    return notification_service.unread_count(ctx.session, ctx.actor.id)


@register("notifications.markAsRead", kind="mutation", input_model=IdInput)
def notifications_mark_as_read(ctx: RpcContext, data: IdInput) -> Any:
    notification_service.mark_as_read(ctx.session, ctx.actor.id, data.id)
    return SUCCESS


@register("notifications.markAllAsRead", kind="mutation")
def notifications_mark_all_as_read(ctx: RpcContext, _: None) -> Any:
    notification_service.mark_all_as_read(ctx.session, ctx.actor.id)
    return SUCCESS


@register("notifications.delete", kind="mutation", input_model=IdInput)
def notifications_delete(ctx: RpcContext, data: IdInput) -> Any:
    notification_service.delete(ctx.session, ctx.actor.id, data.id)
    return SUCCESS


@register("notifications.upcomingActivities")
def notifications_upcoming(ctx: RpcContext, _: None) -> Any:
    return [to_activity_read(row) for row in notification_service.upcoming_activities(ctx.session, ctx.actor.id)]


@register("notifications.overdueActivities")
def notifications_overdue(ctx: RpcContext, _: None) -> Any:
    return [to_activity_read(row) for row in notification_service.overdue_activities(ctx.session, ctx.actor.id)]


@register("notifications.sendActivityReminders", kind="mutation")
def notifications_send_reminders(ctx: RpcContext, _: None) -> Any:
    return reminder_service.send_activity_reminders(ctx.session, ctx.actor.id)


# transport


def to_json(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [to_json(item) for item in value]
    if isinstance(value, dict):
        return {key: to_json(item) for key, item in value.items()}
    return value


def rpc_error(status_code: int, message: str, details: Any = None) -> JSONResponse:
    payload = {
        "code": error_code_for(status_code),
        "message": message,
        "details": details,
        "correlation_id": get_correlation_id(),
    }
    return JSONResponse(status_code=status_code, content={"error": payload})


def call_procedure(request: Request, session: Session | None, name: str, raw_input: Any, method: str) -> Any:
    procedure = registry.get(name)
    if procedure is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"procedure not found: {name}")
    if method == "GET" and procedure.kind == "mutation":
        raise HTTPException(status_code=status.HTTP_405_METHOD_NOT_ALLOWED, detail="mutations require POST")

    auth_user = resolve_user(request, session)
    user = None
    if auth_user is not None:
        user = ActorUser(
            id=auth_user.id,
            name=auth_user.name,
            email=auth_user.email,
            role=auth_user.role,
        )
    if procedure.access != "public" and user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    if procedure.access == "admin":
        ensure_admin(user)

    payload = procedure.parse_input(raw_input)
    return procedure.handler(RpcContext(request=request, session=session, user=user), payload)


def _dispatch(request: Request, session: Session | None, name: str, raw_input: Any, method: str) -> JSONResponse:
    try:
        result = call_procedure(request, session, name, raw_input, method)
    except HTTPException as exc:
        if session is not None:
            session.rollback()
        observe_rpc_call(name, error_code_for(exc.status_code))
        logger.info("rpc.error", extra={"procedure": name, "status_code": exc.status_code})
        return rpc_error(exc.status_code, str(exc.detail), exc.detail)
    except ValidationError as exc:
        observe_rpc_call(name, "BAD_REQUEST")
        details = exc.errors(include_url=False, include_context=False)
        return rpc_error(status.HTTP_400_BAD_REQUEST, "invalid input", jsonable_encoder(details))
    except Exception as exc:
        if session is not None:
            session.rollback()
        observe_rpc_call(name, "INTERNAL_SERVER_ERROR")
        logger.exception("rpc.failed", extra={"procedure": name, "error": str(exc)[:500]})
        return rpc_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal server error")

    observe_rpc_call(name, "OK")
    return JSONResponse(status_code=status.HTTP_200_OK, content={"result": {"data": to_json(result)}})


router = APIRouter(prefix="/api/rpc", tags=["rpc"])


@router.get("/{procedure}")
def rpc_query(
    request: Request,
    procedure: str,
    input_raw: str | None = Query(default=None, alias="input"),
    db: Session | None = Depends(get_db),
) -> JSONResponse:
    try:
        raw_input = json.loads(input_raw) if input_raw else None
    except json.JSONDecodeError:
        return rpc_error(status.HTTP_400_BAD_REQUEST, "input is not valid JSON")
    return _dispatch(request, db, procedure, raw_input, "GET")


@router.post("/{procedure}")
def rpc_mutation(
    request: Request,
    procedure: str,
    body: Any = Body(default=None),
    db: Session | None = Depends(get_db),
) -> JSONResponse:
    return _dispatch(request, db, procedure, body, "POST")
