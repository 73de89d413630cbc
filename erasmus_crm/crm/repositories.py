from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.orm import Session

from erasmus_crm.crm.filters import (
    PredicateBuilder,
    activity_status,
    at_least,
    at_most,
    equals,
    member_of,
    text_search,
)
from erasmus_crm.crm.models import (
    CLOSED_DEAL_STAGES,
    Activity,
    Company,
    Contact,
    ContactTag,
    Deal,
    Notification,
    Tag,
    User,
    utcnow,
)
from erasmus_crm.crm.schemas import (
    ActivityListOptions,
    CompanyListOptions,
    ContactListOptions,
    DealListOptions,
)


class BaseRepository:
    model: Any = None

    def get(self, session: Session, entity_id: int) -> Any | None:
        return session.get(self.model, entity_id)

    def add(self, session: Session, values: dict[str, Any]) -> Any:
        entity = self.model(**values)
        session.add(entity)
        session.flush()
        session.refresh(entity)
        return entity

    def apply_patch(self, session: Session, entity: Any, patch: dict[str, Any]) -> Any:
        for field_name, value in patch.items():
            setattr(entity, field_name, value)
        # onupdate only fires for columns in the UPDATE; an empty patch still bumps the stamp.
        if hasattr(entity, "updated_at"):
            entity.updated_at = utcnow()
        session.flush()
        session.refresh(entity)
        return entity

    def remove(self, session: Session, entity_id: int) -> None:
        session.execute(delete(self.model).where(self.model.id == entity_id))

    def _window(self, query: Select[Any], limit: int, offset: int) -> Select[Any]:
        return query.order_by(self.model.created_at.desc(), self.model.id.desc()).offset(offset).limit(limit)


class ContactRepository(BaseRepository):
    model = Contact

    def build(self, options: ContactListOptions) -> PredicateBuilder:
        return PredicateBuilder().extend(
            [
                text_search(options.search, Contact.first_name, Contact.last_name, Contact.email),
                equals(Contact.status, options.status),
                member_of(Contact.status, options.statuses),
                member_of(Contact.source, options.sources),
                at_least(Contact.created_at, options.date_from),
                at_most(Contact.created_at, options.date_to),
                equals(Contact.owner_id, options.owner_id),
            ]
        )

    def list(self, session: Session, options: ContactListOptions) -> list[Contact]:
        query = self.build(options).apply(select(Contact))
        return list(session.scalars(self._window(query, options.limit, options.offset)).all())

    def count(self, session: Session, *, status: str | None = None, owner_id: int | None = None) -> int:
        builder = PredicateBuilder().extend([equals(Contact.status, status), equals(Contact.owner_id, owner_id)])
        query = builder.apply(select(func.count(Contact.id)))
        return int(session.scalar(query) or 0)

    def remove(self, session: Session, entity_id: int) -> None:
        session.execute(update(Deal).where(Deal.contact_id == entity_id).values(contact_id=None))
        session.execute(update(Activity).where(Activity.contact_id == entity_id).values(contact_id=None))
        session.execute(
            update(Notification).where(Notification.related_contact_id == entity_id).values(related_contact_id=None)
        )
        session.execute(delete(ContactTag).where(ContactTag.contact_id == entity_id))
        super().remove(session, entity_id)


class CompanyRepository(BaseRepository):
    model = Company

    def build(self, options: CompanyListOptions) -> PredicateBuilder:
        return PredicateBuilder().extend(
            [
                text_search(options.search, Company.name, Company.industry),
                equals(Company.owner_id, options.owner_id),
            ]
        )

    def list(self, session: Session, options: CompanyListOptions) -> list[Company]:
        query = self.build(options).apply(select(Company))
        return list(session.scalars(self._window(query, options.limit, options.offset)).all())

    def count(self, session: Session, *, owner_id: int | None = None) -> int:
        query = PredicateBuilder().add(equals(Company.owner_id, owner_id)).apply(select(func.count(Company.id)))
        return int(session.scalar(query) or 0)

    def remove(self, session: Session, entity_id: int) -> None:
        for model in (Contact, Deal, Activity):
            session.execute(update(model).where(model.company_id == entity_id).values(company_id=None))
        super().remove(session, entity_id)


class DealRepository(BaseRepository):
    model = Deal

    def build(self, options: DealListOptions) -> PredicateBuilder:
        return PredicateBuilder().extend(
            [
                equals(Deal.stage, options.stage),
                member_of(Deal.stage, options.stages),
                at_least(Deal.value, options.value_min),
                at_most(Deal.value, options.value_max),
                at_least(Deal.created_at, options.date_from),
                at_most(Deal.created_at, options.date_to),
                equals(Deal.owner_id, options.owner_id),
            ]
        )

    def list(self, session: Session, options: DealListOptions) -> list[Deal]:
        query = self.build(options).apply(select(Deal))
        return list(session.scalars(self._window(query, options.limit, options.offset)).all())

    def count(self, session: Session, *, stage: str | None = None, owner_id: int | None = None) -> int:
        builder = PredicateBuilder().extend([equals(Deal.stage, stage), equals(Deal.owner_id, owner_id)])
        return int(session.scalar(builder.apply(select(func.count(Deal.id)))) or 0)

    def remove(self, session: Session, entity_id: int) -> None:
        session.execute(update(Activity).where(Activity.deal_id == entity_id).values(deal_id=None))
        session.execute(
            update(Notification).where(Notification.related_deal_id == entity_id).values(related_deal_id=None)
        )
        super().remove(session, entity_id)


class ActivityRepository(BaseRepository):
    model = Activity

    def build(self, options: ActivityListOptions, now: datetime | None = None) -> PredicateBuilder:
        return PredicateBuilder().extend(
            [
                equals(Activity.type, options.type),
                member_of(Activity.type, options.types),
                equals(Activity.contact_id, options.contact_id),
                equals(Activity.company_id, options.company_id),
                equals(Activity.deal_id, options.deal_id),
                equals(Activity.owner_id, options.owner_id),
                equals(Activity.is_completed, options.is_completed),
                activity_status(options.status, now),
                at_least(Activity.due_date, options.date_from),
                at_most(Activity.due_date, options.date_to),
            ]
        )

    def list(self, session: Session, options: ActivityListOptions, now: datetime | None = None) -> list[Activity]:
        query = self.build(options, now).apply(select(Activity))
        return list(session.scalars(self._window(query, options.limit, options.offset)).all())

    def recent(self, session: Session, limit: int, *, owner_id: int | None = None) -> list[Activity]:
        query = PredicateBuilder().add(equals(Activity.owner_id, owner_id)).apply(select(Activity))
        return list(session.scalars(self._window(query, limit, 0)).all())

    def count(self, session: Session, *, is_completed: bool | None = None, owner_id: int | None = None) -> int:
        builder = PredicateBuilder().extend(
            [equals(Activity.is_completed, is_completed), equals(Activity.owner_id, owner_id)]
        )
        return int(session.scalar(builder.apply(select(func.count(Activity.id)))) or 0)

    def upcoming_for_owner(self, session: Session, owner_id: int, now: datetime, limit: int = 20) -> list[Activity]:
        end_of_tomorrow = (now + timedelta(days=1)).replace(hour=23, minute=59, second=59, microsecond=999999)
        query = (
            select(Activity)
            .where(
                Activity.owner_id == owner_id,
                Activity.is_completed.is_(False),
                Activity.due_date.is_not(None),
                Activity.due_date <= end_of_tomorrow,
            )
            .order_by(Activity.due_date.asc(), Activity.id.asc())
            .limit(limit)
        )
        return list(session.scalars(query).all())

    def overdue_for_owner(self, session: Session, owner_id: int, now: datetime, limit: int = 20) -> list[Activity]:
        query = (
            select(Activity)
            .where(
                Activity.owner_id == owner_id,
                Activity.is_completed.is_(False),
                Activity.due_date.is_not(None),
                Activity.due_date < now,
            )
            .order_by(Activity.due_date.asc(), Activity.id.asc())
            .limit(limit)
        )
        return list(session.scalars(query).all())

    def remove(self, session: Session, entity_id: int) -> None:
        session.execute(
            update(Notification)
            .where(Notification.related_activity_id == entity_id)
            .values(related_activity_id=None)
        )
        super().remove(session, entity_id)


class TagRepository(BaseRepository):
    model = Tag

    def list(self, session: Session) -> list[Tag]:
        return list(session.scalars(select(Tag).order_by(Tag.name.asc())).all())

    def get_by_name(self, session: Session, name: str) -> Tag | None:
        return session.scalar(select(Tag).where(Tag.name == name))

    def remove(self, session: Session, entity_id: int) -> None:
        session.execute(delete(ContactTag).where(ContactTag.tag_id == entity_id))
        super().remove(session, entity_id)


class UserRepository(BaseRepository):
    model = User

    def list(self, session: Session) -> list[User]:
        return list(session.scalars(select(User).order_by(User.created_at.desc(), User.id.desc())).all())

    def all_except(self, session: Session, exclude_user_id: int | None) -> list[User]:
        query = select(User).order_by(User.id.asc())
        if exclude_user_id is not None:
            query = query.where(User.id != exclude_user_id)
        return list(session.scalars(query).all())

    def email_recipients(self, session: Session, preference: str, exclude_user_id: int | None) -> list[User]:
        flag = getattr(User, preference)
        query = select(User).where(flag.is_(True), User.email.is_not(None)).order_by(User.id.asc())
        if exclude_user_id is not None:
            query = query.where(User.id != exclude_user_id)
        return list(session.scalars(query).all())


class NotificationRepository(BaseRepository):
    model = Notification

    def add_many(self, session: Session, rows: list[dict[str, Any]]) -> int:
        for row in rows:
            session.add(Notification(**row))
        session.flush()
        return len(rows)

    def list_for_user(self, session: Session, user_id: int, *, limit: int, unread_only: bool) -> list[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        return list(session.scalars(self._window(query, limit, 0)).all())

    def unread_count(self, session: Session, user_id: int) -> int:
        query = select(func.count(Notification.id)).where(
            Notification.user_id == user_id, Notification.is_read.is_(False)
        )
        return int(session.scalar(query) or 0)

    def mark_read(self, session: Session, notification_id: int, user_id: int) -> None:
        session.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(is_read=True)
        )

    def mark_all_read(self, session: Session, user_id: int) -> None:
        session.execute(update(Notification).where(Notification.user_id == user_id).values(is_read=True))

    def remove_for_user(self, session: Session, notification_id: int, user_id: int) -> None:
        session.execute(
            delete(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
        )


def _decimal_text(value: Decimal | int | float | None) -> str:
    if value is None:
        return "0"
    return str(value)


class StatsRepository:
    """Grouped counts and sums backing the dashboard and pipeline views."""

    def contacts_by_status(self, session: Session, *, owner_id: int | None = None) -> list[dict[str, Any]]:
        query = PredicateBuilder().add(equals(Contact.owner_id, owner_id)).apply(
            select(Contact.status, func.count(Contact.id))
        )
        rows = session.execute(query.group_by(Contact.status)).all()
        return [{"status": status, "count": int(count)} for status, count in rows]

    def activities_by_type(self, session: Session, *, owner_id: int | None = None) -> list[dict[str, Any]]:
        query = PredicateBuilder().add(equals(Activity.owner_id, owner_id)).apply(
            select(Activity.type, func.count(Activity.id))
        )
        rows = session.execute(query.group_by(Activity.type)).all()
        return [{"type": activity_type, "count": int(count)} for activity_type, count in rows]

    def pipeline_stats(self, session: Session, *, owner_id: int | None = None) -> list[dict[str, Any]]:
        query = PredicateBuilder().add(equals(Deal.owner_id, owner_id)).apply(
            select(Deal.stage, func.count(Deal.id), func.sum(Deal.value))
        )
        rows = session.execute(query.group_by(Deal.stage)).all()
        return [
            {"stage": stage, "count": int(count), "total_value": _decimal_text(total)}
            for stage, count, total in rows
        ]

    def dashboard_stats(self, session: Session, *, owner_id: int | None = None) -> dict[str, Any]:
        def scoped(query: Select[Any], column: Any) -> Select[Any]:
            return PredicateBuilder().add(equals(column, owner_id)).apply(query)

        total_contacts = session.scalar(scoped(select(func.count(Contact.id)), Contact.owner_id))
        total_companies = session.scalar(scoped(select(func.count(Company.id)), Company.owner_id))
        total_deals = session.scalar(scoped(select(func.count(Deal.id)), Deal.owner_id))
        open_activities = session.scalar(
            scoped(select(func.count(Activity.id)), Activity.owner_id).where(Activity.is_completed.is_(False))
        )
        pipeline_value = session.scalar(
            scoped(select(func.sum(Deal.value)), Deal.owner_id).where(Deal.stage.not_in(CLOSED_DEAL_STAGES))
        )
        won_deals_value = session.scalar(
            scoped(select(func.sum(Deal.value)), Deal.owner_id).where(Deal.stage == "closed_won")
        )
        return {
            "total_contacts": int(total_contacts or 0),
            "total_companies": int(total_companies or 0),
            "total_deals": int(total_deals or 0),
            "open_activities": int(open_activities or 0),
            "pipeline_value": _decimal_text(pipeline_value),
            "won_deals_value": _decimal_text(won_deals_value),
        }
