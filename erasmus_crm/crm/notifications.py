from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.orm import Session

from erasmus_crm.context import get_correlation_id
from erasmus_crm.core.celery_app import celery_app, send_owner_notification
from erasmus_crm.core.config import get_settings
from erasmus_crm.core.database import require_session
from erasmus_crm.crm.models import Activity, Notification, utcnow
from erasmus_crm.crm.outbound import dead_letters
from erasmus_crm.crm.repositories import ActivityRepository, NotificationRepository, UserRepository
from erasmus_crm.crm.schemas import NotificationListOptions, ReminderResult
from erasmus_crm.metrics import observe_notifications_created, observe_outbound_notification


logger = logging.getLogger("erasmus_crm.notifications")

notification_repository = NotificationRepository()
user_repository = UserRepository()
activity_repository = ActivityRepository()

EMAIL_PREFERENCE_BY_TYPE = {
    "new_deal": "email_notify_new_deal",
    "deal_won": "email_notify_deal_won",
    "deal_lost": "email_notify_deal_lost",
    "activity_overdue": "email_notify_overdue",
    "activity_due": "email_notify_activity_due",
}


class NotificationService:
    def create_for_all_users(self, session: Session, data: dict[str, Any], exclude_user_id: int | None = None) -> int:
        """Insert one in-app notification per user except ``exclude_user_id``.

        Runs inside the caller's transaction; failures propagate.
        """
        recipients = user_repository.all_except(session, exclude_user_id)
        rows = [{**data, "user_id": user.id} for user in recipients]
        created = notification_repository.add_many(session, rows)
        observe_notifications_created(data["type"], created)
        logger.info(
            "notification.fanout",
            extra={"notification_type": data["type"], "recipient_count": created, "user_id": exclude_user_id},
        )
        return created

    def list(self, session: Session | None, user_id: int, options: NotificationListOptions) -> list[Notification]:
        if session is None:
            return []
        return notification_repository.list_for_user(
            session, user_id, limit=options.limit, unread_only=options.unread_only
        )

    def unread_count(self, session: Session | None, user_id: int) -> int:
        if session is None:
            return 0
        return notification_repository.unread_count(session, user_id)

    def mark_as_read(self, session: Session | None, user_id: int, notification_id: int) -> None:
        db = require_session(session)
        notification_repository.mark_read(db, notification_id, user_id)
        db.commit()

    def mark_all_as_read(self, session: Session | None, user_id: int) -> None:
        db = require_session(session)
        notification_repository.mark_all_read(db, user_id)
        db.commit()

    def delete(self, session: Session | None, user_id: int, notification_id: int) -> None:
        db = require_session(session)
        notification_repository.remove_for_user(db, notification_id, user_id)
        db.commit()

    def upcoming_activities(self, session: Session | None, user_id: int, now: datetime | None = None) -> list[Activity]:
        if session is None:
            return []
        return activity_repository.upcoming_for_owner(session, user_id, now or utcnow())

    def overdue_activities(self, session: Session | None, user_id: int, now: datetime | None = None) -> list[Activity]:
        if session is None:
            return []
        return activity_repository.overdue_for_owner(session, user_id, now or utcnow())


class NotificationDispatcher:
    """Hands an owner notification to the Celery task; never raises."""

    def dispatch(self, notification_type: str, title: str, content: str) -> bool:
        try:
            result = send_owner_notification.apply_async(
                kwargs={
                    "notification_type": notification_type,
                    "title": title,
                    "content": content,
                    "correlation_id": get_correlation_id(),
                }
            )
        except Exception as exc:
            observe_outbound_notification(notification_type, "dispatch_failed")
            dead_letters.record(notification_type, title, content, reason=f"dispatch failed: {exc}")
            logger.warning(
                "notification.dispatch_failed",
                extra={"notification_type": notification_type, "error": str(exc)[:500]},
            )
            return False

        if not celery_app.conf.task_always_eager:
            return True
        if result.failed():
            dead_letters.record(notification_type, title, content, reason=f"task failed: {result.result}")
            return False
        return bool(result.result)


def format_money(value: Decimal | str | None) -> str:
    if value is None or value == "":
        return "Not specified"
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return "Not specified"
    if amount == amount.to_integral_value():
        amount = amount.quantize(Decimal(1))
    else:
        amount = amount.normalize()
    return f"{get_settings().export_currency_symbol}{amount:,}"


def build_digest(content: str, recipient_names: Sequence[str], notification_type: str) -> str:
    return f"{content}\n\n---\nRecipients: {', '.join(recipient_names)}\nNotification Type: {notification_type}"


class EmailNotificationService:
    """Preference-filtered owner notifications.

    Every public method reports success as a bool and swallows its own failures
    after logging them, so callers can fire and forget.
    """

    def __init__(self, dispatcher: NotificationDispatcher | None = None) -> None:
        self.dispatcher = dispatcher or NotificationDispatcher()

    def eligible_users(
        self,
        session: Session | None,
        notification_type: str,
        *,
        exclude_user_id: int | None = None,
        recipient_user_id: int | None = None,
    ) -> list[Any]:
        preference = EMAIL_PREFERENCE_BY_TYPE.get(notification_type)
        if session is None or preference is None:
            return []
        users = user_repository.email_recipients(session, preference, exclude_user_id)
        if recipient_user_id is not None:
            users = [user for user in users if user.id == recipient_user_id]
        return users

    def send(
        self,
        session: Session | None,
        notification_type: str,
        title: str,
        content: str,
        *,
        exclude_user_id: int | None = None,
        recipient_user_id: int | None = None,
    ) -> bool:
        try:
            users = self.eligible_users(
                session,
                notification_type,
                exclude_user_id=exclude_user_id,
                recipient_user_id=recipient_user_id,
            )
            if not users:
                logger.info("notification.no_recipients", extra={"notification_type": notification_type})
                return True

            names = [user.name or user.email or "User" for user in users]
            digest = build_digest(content, names, notification_type)
            sent = self.dispatcher.dispatch(notification_type, f"[CRM] {title}", digest)
        except Exception as exc:
            observe_outbound_notification(notification_type, "error")
            dead_letters.record(notification_type, title, content, reason=str(exc)[:500])
            logger.exception("notification.email_error", extra={"notification_type": notification_type})
            return False

        if sent:
            logger.info(
                "notification.email_sent",
                extra={"notification_type": notification_type, "recipient_count": len(users)},
            )
        else:
            logger.warning("notification.email_failed", extra={"notification_type": notification_type})
        return sent

    def notify_new_deal(
        self, session: Session | None, title: str, value: Decimal | None, creator_name: str, creator_id: int
    ) -> bool:
        content = (
            "A new deal has been created in the CRM:\n\n"
            f"**Deal:** {title}\n"
            f"**Value:** {format_money(value)}\n"
            f"**Created by:** {creator_name}\n\n"
            "Log in to the CRM to view details and take action."
        )
        return self.send(session, "new_deal", "New Deal Created", content, exclude_user_id=creator_id)

    def notify_deal_won(
        self, session: Session | None, title: str, value: Decimal | None, updater_name: str, updater_id: int
    ) -> bool:
        content = (
            "Great news! A deal has been marked as WON:\n\n"
            f"**Deal:** {title}\n"
            f"**Value:** {format_money(value)}\n"
            f"**Updated by:** {updater_name}\n\n"
            "Congratulations to the team!"
        )
        return self.send(session, "deal_won", "🎉 Deal Won!", content, exclude_user_id=updater_id)

    def notify_deal_lost(
        self,
        session: Session | None,
        title: str,
        value: Decimal | None,
        lost_reason: str | None,
        updater_name: str,
        updater_id: int,
    ) -> bool:
        content = (
            "A deal has been marked as LOST:\n\n"
            f"**Deal:** {title}\n"
            f"**Value:** {format_money(value)}\n"
            f"**Reason:** {lost_reason or 'Not specified'}\n"
            f"**Updated by:** {updater_name}\n\n"
            "Review the deal in the CRM for more details."
        )
        return self.send(session, "deal_lost", "Deal Lost", content, exclude_user_id=updater_id)

    def notify_overdue_activities(self, session: Session | None, activities: Sequence[Activity], recipient_id: int) -> bool:
        if not activities:
            return True
        lines = "\n".join(f"- {item.subject} (Due: {_due(item)})" for item in activities)
        content = (
            "You have overdue activities that need attention:\n\n"
            f"{lines}\n\n"
            "Please log in to the CRM to complete or reschedule these activities."
        )
        return self.send(
            session,
            "activity_overdue",
            f"⚠️ {len(activities)} Overdue Activities",
            content,
            recipient_user_id=recipient_id,
        )

    def notify_upcoming_activities(
        self, session: Session | None, activities: Sequence[Activity], recipient_id: int
    ) -> bool:
        if not activities:
            return True
        lines = "\n".join(f"- [{item.type.upper()}] {item.subject} (Due: {_due(item)})" for item in activities)
        content = (
            "You have activities due soon:\n\n"
            f"{lines}\n\n"
            "Log in to the CRM to view details and complete these activities."
        )
        return self.send(
            session,
            "activity_due",
            f"📅 {len(activities)} Activities Due Soon",
            content,
            recipient_user_id=recipient_id,
        )


def _due(activity: Activity) -> str:
    return activity.due_date.strftime("%Y-%m-%d") if activity.due_date else "-"


class ReminderService:
    def __init__(
        self,
        notifications: NotificationService | None = None,
        email: EmailNotificationService | None = None,
    ) -> None:
        self.notifications = notifications or NotificationService()
        self.email = email or EmailNotificationService()

    def send_activity_reminders(self, session: Session | None, user_id: int) -> ReminderResult:
        now = utcnow()
        upcoming = self.notifications.upcoming_activities(session, user_id, now)
        overdue = self.notifications.overdue_activities(session, user_id, now)
        return ReminderResult(
            upcoming_sent=self.email.notify_upcoming_activities(session, upcoming, user_id),
            overdue_sent=self.email.notify_overdue_activities(session, overdue, user_id),
            upcoming_count=len(upcoming),
            overdue_count=len(overdue),
        )
