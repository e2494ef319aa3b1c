from stockyard.models.user import User
from stockyard.models.listing import Listing, ListingReservation
from stockyard.models.order import Order
from stockyard.models.order_timeline_event import OrderTimelineEvent
from stockyard.models.notification import Notification
from stockyard.models.audit_log import AuditLog
from stockyard.models.webhook_event import WebhookEvent
from stockyard.models.job_run import JobRun
from stockyard.models.idempotency_key import IdempotencyKey

__all__ = [
    "User",
    "Listing",
    "ListingReservation",
    "Order",
    "OrderTimelineEvent",
    "Notification",
    "AuditLog",
    "WebhookEvent",
    "JobRun",
    "IdempotencyKey",
]
