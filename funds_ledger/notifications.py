"""
Notification Module

Fire-and-forget user notifications for transfers and loan events. Delivery is
delegated to channel providers; a provider failure is logged and never
propagates into the money operation that triggered it.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

logger = get_logger(__name__)


class NotificationType(Enum):
    """Types of notifications"""
    # Transfers
    TRANSFER_SENT = "transfer_sent"
    TRANSFER_RECEIVED = "transfer_received"
    EXTERNAL_TRANSFER_SENT = "external_transfer_sent"

    # Wires
    WIRE_VERIFICATION_CODE = "wire_verification_code"
    WIRE_TRANSFER_PROCESSING = "wire_transfer_processing"
    WIRE_TRANSFER_SETTLED = "wire_transfer_settled"
    WIRE_TRANSFER_FAILED = "wire_transfer_failed"

    # Loans
    LOAN_PAYMENT_RECEIVED = "loan_payment_received"
    LOAN_PAID_OFF = "loan_paid_off"
    LATE_FEE_ASSESSED = "late_fee_assessed"
    AUTO_PAYMENT_ENABLED = "auto_payment_enabled"
    AUTO_PAYMENT_DISABLED = "auto_payment_disabled"
    AUTO_PAYMENT_FAILED = "auto_payment_failed"


class NotificationPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class Notification(StorageRecord):
    """Individual notification instance"""
    user_id: str
    notification_type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    read: bool = False
    transient: bool = False  # Carries a secret (verification code); never persisted or logged


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Deliver notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes notifications to the application log"""

    def send(self, notification: Notification) -> bool:
        text = notification.title if notification.transient else f"{notification.title}: {notification.message}"
        log_action(
            logger, "info", text,
            user_id=notification.user_id,
            action="notify",
            resource=notification.notification_type.value
        )
        return True


class InAppChannelProvider(ChannelProvider):
    """In-app notification provider using storage"""

    def __init__(self, storage: StorageInterface, table: str = "notifications"):
        self.storage = storage
        self.table = table

    def send(self, notification: Notification) -> bool:
        if notification.transient:
            return True
        self.storage.save(self.table, notification.id, notification.to_dict())
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external delivery (email/SMS gateways)"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "priority": notification.priority.value,
            "user_id": notification.user_id,
            "title": notification.title,
            "message": notification.message,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.to_dict()["metadata"]
        }
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return 200 <= response.status_code < 300


class NotificationService:
    """Builds notifications and fans them out to every registered provider"""

    def __init__(self, storage: StorageInterface, providers: Optional[List[ChannelProvider]] = None):
        self.storage = storage
        self.in_app = InAppChannelProvider(storage)
        if providers is None:
            providers = [self.in_app, LogChannelProvider()]
        self.providers = providers

    def register_provider(self, provider: ChannelProvider) -> None:
        self.providers.append(provider)

    def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        metadata: Optional[Dict[str, Any]] = None,
        transient: bool = False
    ) -> Notification:
        """Send a notification; delivery failures are logged, not raised"""
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            notification_type=notification_type,
            priority=priority,
            title=title,
            message=message,
            metadata=metadata or {},
            transient=transient
        )

        for provider in self.providers:
            try:
                delivered = provider.send(notification)
            except Exception as e:
                logger.warning(
                    f"{type(provider).__name__} failed for notification {notification.id}: {e}"
                )
                continue
            if not delivered:
                logger.warning(
                    f"{type(provider).__name__} did not deliver notification {notification.id}"
                )

        return notification

    def get_notifications(self, user_id: str, unread_only: bool = False) -> List[Notification]:
        filters: Dict[str, Any] = {"user_id": user_id}
        if unread_only:
            filters["read"] = False
        notifications = [
            Notification.from_dict(data)
            for data in self.storage.find(self.in_app.table, filters)
        ]
        notifications.sort(key=lambda n: n.created_at)
        return notifications

    def mark_as_read(self, notification_id: str) -> bool:
        data = self.storage.load(self.in_app.table, notification_id)
        if not data:
            return False
        data["read"] = True
        data["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.in_app.table, notification_id, data)
        return True
