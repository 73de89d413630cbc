from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from erasmus_crm.core.auth import AuthUser
from erasmus_crm.core.config import get_settings
from erasmus_crm.core.database import require_session
from erasmus_crm.core.rbac import ensure_admin, owner_scope
from erasmus_crm.crm.export import (
    ACTIVITY_COLUMNS,
    COMPANY_COLUMNS,
    CONTACT_COLUMNS,
    DASHBOARD_REPORT_COLUMNS,
    DEAL_COLUMNS,
    build_export,
    dashboard_report_rows,
)
from erasmus_crm.crm.filters import derive_activity_status
from erasmus_crm.crm.models import CLOSED_DEAL_STAGES, Activity, utcnow
from erasmus_crm.crm.notifications import EmailNotificationService, NotificationService, format_money
from erasmus_crm.crm.repositories import (
    ActivityRepository,
    CompanyRepository,
    ContactRepository,
    DealRepository,
    StatsRepository,
    TagRepository,
    UserRepository,
)
from erasmus_crm.crm.schemas import (
    ActivityCreate,
    ActivityListOptions,
    ActivityRead,
    ActivityUpdate,
    CompanyCreate,
    CompanyListOptions,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactListOptions,
    ContactRead,
    ContactUpdate,
    DashboardStats,
    DealCreate,
    DealListOptions,
    DealRead,
    DealUpdate,
    EmailPreferences,
    EmailPreferencesUpdate,
    ExportResult,
    PipelineStageStats,
    StatusCount,
    TagCreate,
    TagRead,
    TypeCount,
    UserRead,
)
from erasmus_crm.metrics import observe_export


logger = logging.getLogger("erasmus_crm.crm")

contact_repository = ContactRepository()
company_repository = CompanyRepository()
deal_repository = DealRepository()
activity_repository = ActivityRepository()
tag_repository = TagRepository()
user_repository = UserRepository()
stats_repository = StatsRepository()


class ActorUser(AuthUser):
    @property
    def display_name(self) -> str:
        return self.name or "A user"


def _not_found(entity: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity} not found")


def _patch(dto: Any, required: tuple[str, ...] = ()) -> dict[str, Any]:
    # Explicit nulls clear optional columns but never the required ones.
    values = dto.model_dump(exclude_unset=True)
    return {key: value for key, value in values.items() if value is not None or key not in required}


class ContactService:
    def list_contacts(self, session: Session | None, actor_user: AuthUser, options: ContactListOptions) -> list[ContactRead]:
        if session is None:
            return []
        scoped = options.model_copy(update={"owner_id": owner_scope(actor_user)})
        return [ContactRead.model_validate(row) for row in contact_repository.list(session, scoped)]

    def get_contact(self, session: Session | None, contact_id: int) -> ContactRead:
        contact = contact_repository.get(session, contact_id) if session is not None else None
        if contact is None:
            raise _not_found("contact")
        return ContactRead.model_validate(contact)

    def create_contact(self, session: Session | None, actor_user: AuthUser, dto: ContactCreate) -> ContactRead:
        db = require_session(session)
        values = dto.model_dump(exclude_none=True)
        values["owner_id"] = actor_user.id
        contact = contact_repository.add(db, values)
        db.commit()
        return ContactRead.model_validate(contact)

    def update_contact(self, session: Session | None, contact_id: int, dto: ContactUpdate) -> ContactRead:
        db = require_session(session)
        contact = contact_repository.get(db, contact_id)
        if contact is None:
            raise _not_found("contact")
        contact_repository.apply_patch(db, contact, _patch(dto, ("first_name", "last_name", "status")))
        db.commit()
        return ContactRead.model_validate(contact)

    def delete_contact(self, session: Session | None, contact_id: int) -> None:
        db = require_session(session)
        if contact_repository.get(db, contact_id) is None:
            raise _not_found("contact")
        contact_repository.remove(db, contact_id)
        db.commit()

    def count_contacts(self, session: Session | None, actor_user: AuthUser, contact_status: str | None = None) -> int:
        if session is None:
            return 0
        return contact_repository.count(session, status=contact_status, owner_id=owner_scope(actor_user))


class CompanyService:
    def list_companies(
        self, session: Session | None, actor_user: AuthUser, options: CompanyListOptions
    ) -> list[CompanyRead]:
        if session is None:
            return []
        scoped = options.model_copy(update={"owner_id": owner_scope(actor_user)})
        return [CompanyRead.model_validate(row) for row in company_repository.list(session, scoped)]

    def get_company(self, session: Session | None, company_id: int) -> CompanyRead:
        company = company_repository.get(session, company_id) if session is not None else None
        if company is None:
            raise _not_found("company")
        return CompanyRead.model_validate(company)

    def create_company(self, session: Session | None, actor_user: AuthUser, dto: CompanyCreate) -> CompanyRead:
        db = require_session(session)
        values = dto.model_dump(exclude_none=True)
        values["owner_id"] = actor_user.id
        company = company_repository.add(db, values)
        db.commit()
        return CompanyRead.model_validate(company)

    def update_company(self, session: Session | None, company_id: int, dto: CompanyUpdate) -> CompanyRead:
        db = require_session(session)
        company = company_repository.get(db, company_id)
        if company is None:
            raise _not_found("company")
        company_repository.apply_patch(db, company, _patch(dto, ("name",)))
        db.commit()
        return CompanyRead.model_validate(company)

    def delete_company(self, session: Session | None, company_id: int) -> None:
        db = require_session(session)
        if company_repository.get(db, company_id) is None:
            raise _not_found("company")
        company_repository.remove(db, company_id)
        db.commit()

    def count_companies(self, session: Session | None, actor_user: AuthUser) -> int:
        if session is None:
            return 0
        return company_repository.count(session, owner_id=owner_scope(actor_user))


class DealService:
    """Deal CRUD plus the notification fan-out on creation and on closing.

    In-app notifications are written in the same transaction as the deal; the
    email digest is attempted after commit and cannot fail the mutation.
    """

    def __init__(
        self,
        notifications: NotificationService | None = None,
        email: EmailNotificationService | None = None,
    ) -> None:
        self.notifications = notifications or NotificationService()
        self.email = email or EmailNotificationService()

    def list_deals(self, session: Session | None, actor_user: AuthUser, options: DealListOptions) -> list[DealRead]:
        if session is None:
            return []
        scoped = options.model_copy(update={"owner_id": owner_scope(actor_user)})
        return [DealRead.model_validate(row) for row in deal_repository.list(session, scoped)]

    def get_deal(self, session: Session | None, deal_id: int) -> DealRead:
        deal = deal_repository.get(session, deal_id) if session is not None else None
        if deal is None:
            raise _not_found("deal")
        return DealRead.model_validate(deal)

    def create_deal(self, session: Session | None, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        db = require_session(session)
        values = dto.model_dump(exclude_none=True)
        values["owner_id"] = actor_user.id
        if values.get("stage") in CLOSED_DEAL_STAGES:
            values["actual_close_date"] = utcnow()
        deal = deal_repository.add(db, values)
        self.notifications.create_for_all_users(
            db,
            {
                "type": "new_deal",
                "title": "New Deal Created",
                "message": f"{actor_user.display_name} created a new deal: {dto.title}",
                "link": "/deals",
                "related_deal_id": deal.id,
            },
            exclude_user_id=actor_user.id,
        )
        db.commit()
        logger.info("deal.created", extra={"deal_id": deal.id, "user_id": actor_user.id})

        self.email.notify_new_deal(db, dto.title, dto.value, actor_user.display_name, actor_user.id)
        return DealRead.model_validate(deal)

    def update_deal(self, session: Session | None, actor_user: ActorUser, deal_id: int, dto: DealUpdate) -> DealRead:
        db = require_session(session)
        deal = deal_repository.get(db, deal_id)
        if deal is None:
            raise _not_found("deal")
        previous_stage = deal.stage
        previous_title = deal.title
        previous_value = deal.value
        previous_lost_reason = deal.lost_reason

        patch = _patch(dto, ("title", "stage"))
        new_stage = patch.get("stage")
        stage_changed = new_stage is not None and new_stage != previous_stage
        if stage_changed and new_stage in CLOSED_DEAL_STAGES:
            patch["actual_close_date"] = utcnow()
        deal_repository.apply_patch(db, deal, patch)

        if stage_changed and new_stage == "closed_won":
            self._fan_out(db, actor_user, deal_id, "deal_won", "Deal Won! 🎉", f"{previous_title} has been marked as won")
        elif stage_changed and new_stage == "closed_lost":
            self._fan_out(db, actor_user, deal_id, "deal_lost", "Deal Lost", f"{previous_title} has been marked as lost")
        db.commit()

        if stage_changed:
            logger.info("deal.stage_changed", extra={"deal_id": deal_id, "user_id": actor_user.id, "status": new_stage})
        if stage_changed and new_stage == "closed_won":
            self.email.notify_deal_won(db, previous_title, previous_value, actor_user.display_name, actor_user.id)
        elif stage_changed and new_stage == "closed_lost":
            lost_reason = patch.get("lost_reason") or previous_lost_reason
            self.email.notify_deal_lost(
                db, previous_title, previous_value, lost_reason, actor_user.display_name, actor_user.id
            )
        return DealRead.model_validate(deal)

    def delete_deal(self, session: Session | None, deal_id: int) -> None:
        db = require_session(session)
        if deal_repository.get(db, deal_id) is None:
            raise _not_found("deal")
        deal_repository.remove(db, deal_id)
        db.commit()

    def count_deals(self, session: Session | None, actor_user: AuthUser, stage: str | None = None) -> int:
        if session is None:
            return 0
        return deal_repository.count(session, stage=stage, owner_id=owner_scope(actor_user))

    def _fan_out(
        self, session: Session, actor_user: ActorUser, deal_id: int, notification_type: str, title: str, message: str
    ) -> None:
        self.notifications.create_for_all_users(
            session,
            {
                "type": notification_type,
                "title": title,
                "message": message,
                "link": "/deals",
                "related_deal_id": deal_id,
            },
            exclude_user_id=actor_user.id,
        )


def to_activity_read(activity: Activity) -> ActivityRead:
    read = ActivityRead.model_validate(activity)
    read.status = derive_activity_status(activity)
    return read


class ActivityService:
    def list_activities(
        self, session: Session | None, actor_user: AuthUser, options: ActivityListOptions
    ) -> list[ActivityRead]:
        if session is None:
            return []
        scoped = options.model_copy(update={"owner_id": owner_scope(actor_user)})
        now = utcnow()
        return [to_activity_read(row) for row in activity_repository.list(session, scoped, now)]

    def get_activity(self, session: Session | None, activity_id: int) -> ActivityRead:
        activity = activity_repository.get(session, activity_id) if session is not None else None
        if activity is None:
            raise _not_found("activity")
        return to_activity_read(activity)

    def create_activity(self, session: Session | None, actor_user: AuthUser, dto: ActivityCreate) -> ActivityRead:
        db = require_session(session)
        values = dto.model_dump(exclude_none=True)
        values["owner_id"] = actor_user.id
        activity = activity_repository.add(db, values)
        db.commit()
        return to_activity_read(activity)

    def update_activity(self, session: Session | None, activity_id: int, dto: ActivityUpdate) -> ActivityRead:
        db = require_session(session)
        activity = activity_repository.get(db, activity_id)
        if activity is None:
            raise _not_found("activity")
        activity_repository.apply_patch(db, activity, _patch(dto, ("type", "subject")))
        db.commit()
        return to_activity_read(activity)

    def complete_activity(self, session: Session | None, activity_id: int) -> ActivityRead:
        db = require_session(session)
        activity = activity_repository.get(db, activity_id)
        if activity is None:
            raise _not_found("activity")
        activity_repository.apply_patch(db, activity, {"is_completed": True, "completed_at": utcnow()})
        db.commit()
        return to_activity_read(activity)

    def delete_activity(self, session: Session | None, activity_id: int) -> None:
        db = require_session(session)
        if activity_repository.get(db, activity_id) is None:
            raise _not_found("activity")
        activity_repository.remove(db, activity_id)
        db.commit()

    def recent_activities(self, session: Session | None, limit: int = 10) -> list[ActivityRead]:
        if session is None:
            return []
        return [to_activity_read(row) for row in activity_repository.recent(session, limit)]


class TagService:
    def list_tags(self, session: Session | None) -> list[TagRead]:
        if session is None:
            return []
        return [TagRead.model_validate(tag) for tag in tag_repository.list(session)]

    def create_tag(self, session: Session | None, dto: TagCreate) -> TagRead:
        db = require_session(session)
        if tag_repository.get_by_name(db, dto.name) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="tag already exists")
        try:
            tag = tag_repository.add(db, dto.model_dump(exclude_none=True))
            db.commit()
        except IntegrityError:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="tag already exists")
        return TagRead.model_validate(tag)

    def delete_tag(self, session: Session | None, tag_id: int) -> None:
        db = require_session(session)
        if tag_repository.get(db, tag_id) is None:
            raise _not_found("tag")
        tag_repository.remove(db, tag_id)
        db.commit()


class UserService:
    def list_users(self, session: Session | None, actor_user: AuthUser) -> list[UserRead]:
        ensure_admin(actor_user)
        if session is None:
            return []
        return [UserRead.model_validate(user) for user in user_repository.list(session)]

    def update_role(self, session: Session | None, actor_user: AuthUser, user_id: int, role: str) -> UserRead:
        ensure_admin(actor_user)
        db = require_session(session)
        user = user_repository.get(db, user_id)
        if user is None:
            raise _not_found("user")
        user_repository.apply_patch(db, user, {"role": role})
        db.commit()
        logger.info("user.role_updated", extra={"user_id": user_id, "status": role})
        return UserRead.model_validate(user)

    def get_email_preferences(self, session: Session | None, actor_user: AuthUser) -> EmailPreferences | None:
        if session is None:
            return None
        user = user_repository.get(session, actor_user.id)
        if user is None:
            return None
        return EmailPreferences.model_validate(user)

    def update_email_preferences(
        self, session: Session | None, actor_user: AuthUser, dto: EmailPreferencesUpdate
    ) -> EmailPreferences:
        db = require_session(session)
        user = user_repository.get(db, actor_user.id)
        if user is None:
            raise _not_found("user")
        user_repository.apply_patch(db, user, dto.model_dump(exclude_none=True))
        db.commit()
        return EmailPreferences.model_validate(user)


class DashboardService:
    """Team-wide aggregates; unavailable storage renders as zeros."""

    def stats(self, session: Session | None) -> DashboardStats:
        if session is None:
            return DashboardStats()
        return DashboardStats(**stats_repository.dashboard_stats(session))

    def contacts_by_status(self, session: Session | None) -> list[StatusCount]:
        if session is None:
            return []
        return [StatusCount(**row) for row in stats_repository.contacts_by_status(session)]

    def activities_by_type(self, session: Session | None) -> list[TypeCount]:
        if session is None:
            return []
        return [TypeCount(**row) for row in stats_repository.activities_by_type(session)]

    def pipeline_stats(self, session: Session | None) -> list[PipelineStageStats]:
        if session is None:
            return []
        return [PipelineStageStats(**row) for row in stats_repository.pipeline_stats(session)]


class ExportService:
    def __init__(
        self,
        contacts: ContactService | None = None,
        companies: CompanyService | None = None,
        deals: DealService | None = None,
        activities: ActivityService | None = None,
        dashboard: DashboardService | None = None,
    ) -> None:
        self.contacts = contacts or ContactService()
        self.companies = companies or CompanyService()
        self.deals = deals or DealService()
        self.activities = activities or ActivityService()
        self.dashboard = dashboard or DashboardService()

    def export_contacts(self, session: Session | None, actor_user: AuthUser, export_format: str) -> ExportResult:
        rows = self.contacts.list_contacts(session, actor_user, ContactListOptions(limit=self._row_limit()))
        return self._render("contacts", export_format, rows, CONTACT_COLUMNS, "contacts_export", "Contacts")

    def export_deals(self, session: Session | None, actor_user: AuthUser, export_format: str) -> ExportResult:
        rows = self.deals.list_deals(session, actor_user, DealListOptions(limit=self._row_limit()))
        return self._render("deals", export_format, rows, DEAL_COLUMNS, "deals_export", "Deals")

    def export_companies(self, session: Session | None, export_format: str) -> ExportResult:
        rows = []
        if session is not None:
            options = CompanyListOptions(limit=self._row_limit())
            rows = [CompanyRead.model_validate(row) for row in company_repository.list(session, options)]
        return self._render("companies", export_format, rows, COMPANY_COLUMNS, "companies_export", "Companies")

    def export_activities(self, session: Session | None, actor_user: AuthUser, export_format: str) -> ExportResult:
        rows = self.activities.list_activities(session, actor_user, ActivityListOptions(limit=self._row_limit()))
        return self._render("activities", export_format, rows, ACTIVITY_COLUMNS, "activities_export", "Activities")

    def export_dashboard_report(self, session: Session | None, export_format: str) -> ExportResult:
        stats = self.dashboard.stats(session).model_dump()
        rows = dashboard_report_rows(stats, format_money)
        return self._render("dashboard", export_format, rows, DASHBOARD_REPORT_COLUMNS, "crm_report", "CRM Report")

    def _row_limit(self) -> int:
        return get_settings().export_row_limit

    def _render(
        self, entity: str, export_format: str, rows: list[Any], columns: list[Any], basename: str, sheet_name: str
    ) -> ExportResult:
        payload = build_export(export_format, rows, columns, basename=basename, sheet_name=sheet_name)
        observe_export(entity, export_format)
        logger.info(
            "export.generated",
            extra={"export_entity": entity, "export_format": export_format, "row_count": len(rows)},
        )
        return ExportResult(**payload)
