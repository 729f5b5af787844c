"""Dispatch of buyer/seller notifications and tier workflows.

Delivery happens in separate worker jobs; billing state never depends on it.
"""

import logging
from enum import Enum
from uuid import UUID

from chargeflow.core.config import settings
from chargeflow.services.job_scheduler import JobScheduler

logger = logging.getLogger(__name__)


class Notification(str, Enum):
    SUBSCRIPTION_CARD_DECLINED = "subscription_card_declined"
    SUBSCRIPTION_CHARGE_DECLINED_REMINDER = "subscription_charge_declined_reminder"
    SUBSCRIPTION_AUTOCANCELLED = "subscription_autocancelled"
    SELLER_SUBSCRIPTION_AUTOCANCELLED = "seller_subscription_autocancelled"
    SUBSCRIPTION_PRICE_CHANGE = "subscription_price_change"
    MEMBERSHIP_UPDATE_FAILED = "membership_update_failed"
    PREORDER_CARD_DECLINED = "preorder_card_declined"
    PREORDER_CANCELLED = "preorder_cancelled"
    SELLER_PREORDER_CANCELLED = "seller_preorder_cancelled"


LOW_PRIORITY_NOTIFICATIONS = frozenset({Notification.PREORDER_CARD_DECLINED})


class NotificationService:
    """Schedules notification and workflow jobs on a ``JobScheduler``."""

    def __init__(self, scheduler: JobScheduler):
        self.scheduler = scheduler

    def notify(self, notification: Notification, record_id: UUID) -> None:
        queue_name = (
            settings.LOW_PRIORITY_QUEUE_NAME
            if notification in LOW_PRIORITY_NOTIFICATIONS
            else None
        )
        self.scheduler.enqueue(
            "deliver_notification_task",
            notification.value,
            str(record_id),
            queue_name=queue_name,
        )
        logger.info("Scheduled %s notification for %s", notification.value, record_id)

    def schedule_tier_workflows(self, tier_id: UUID, purchase_id: UUID) -> None:
        self.scheduler.enqueue("schedule_tier_workflows_task", str(tier_id), str(purchase_id))
