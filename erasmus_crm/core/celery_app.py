import logging

from celery import Celery

from erasmus_crm.context import correlation_scope
from erasmus_crm.core.config import get_settings
from erasmus_crm.crm.outbound import OwnerNotificationClient, dead_letters
from erasmus_crm.metrics import observe_outbound_notification

settings = get_settings()
logger = logging.getLogger("erasmus_crm.tasks")

celery_app = Celery("erasmus_crm", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.update(
    task_always_eager=settings.celery_always_eager,
    task_eager_propagates=False,
    task_serializer="json",
    accept_content=["json"],
)


@celery_app.task(name="erasmus_crm.tasks.send_owner_notification")
def send_owner_notification(
    notification_type: str, title: str, content: str, correlation_id: str | None = None
) -> bool:
    with correlation_scope(correlation_id):
        delivered = OwnerNotificationClient().notify(title, content)
        observe_outbound_notification(notification_type, "sent" if delivered else "failed")
        if not delivered:
            dead_letters.record(notification_type, title, content, reason="delivery failed")
            logger.warning("notification.email_failed", extra={"notification_type": notification_type})
        return delivered
