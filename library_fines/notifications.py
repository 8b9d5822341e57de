"""
Notification Module

Member-facing messages for fine warnings, bans, restored memberships and
payment receipts. Delivery is fire-and-forget: messages are rendered on the
caller's thread and handed to a worker pool, and a delivery failure is logged
and never reaches the fine or ban operation that triggered it.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any
from enum import Enum
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
import logging
import uuid

import requests

from .currency import Money
from .errors import NotificationFailure
from .logging_config import get_logger
from .models import Loan, Member, FineTransaction
from .storage import StorageInterface, StorageRecord


class NotificationType(Enum):
    """Types of member notifications"""
    FINE_WARNING = "fine_warning"
    MEMBER_BANNED = "member_banned"
    MEMBERSHIP_RESTORED = "membership_restored"
    PAYMENT_RECEIPT = "payment_receipt"


class NotificationStatus(Enum):
    """Delivery status of a notification"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class Notification(StorageRecord):
    """A rendered message addressed to one member"""
    notification_type: NotificationType
    recipient_id: str
    recipient_address: Optional[str]
    sender: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    failed_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    name = "channel"

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes notifications to the log instead of delivering them"""

    name = "log"

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger("library_fines.notifications.log")

    def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"{notification.notification_type.value} to {notification.recipient_address}: "
            f"{notification.subject} | {notification.body[:100]}"
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """POSTs notifications as JSON to an external mail/SMS gateway"""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient_id": notification.recipient_id,
            "to": notification.recipient_address,
            "from": notification.sender,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }

        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            raise NotificationFailure(f"Webhook delivery to {self.url} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise NotificationFailure(
                f"Webhook {self.url} rejected notification {notification.id} "
                f"with HTTP {response.status_code}"
            )
        return True


class Notifier(ABC):
    """Outbound notification contract used by the fine services"""

    @abstractmethod
    def warn(self, member: Member, loan: Loan) -> None:
        """Member's outstanding fines exceed the credit limit"""

    @abstractmethod
    def banned(self, member: Member, loan: Loan) -> None:
        """Member was suspended because of ``loan``"""

    @abstractmethod
    def restored(self, member: Member) -> None:
        """Member's ban expired and borrowing is allowed again"""

    @abstractmethod
    def receipt(self, member: Member, transaction: FineTransaction) -> None:
        """A payment was recorded"""


class NullNotifier(Notifier):
    """Discards every notification"""

    def warn(self, member: Member, loan: Loan) -> None:
        pass

    def banned(self, member: Member, loan: Loan) -> None:
        pass

    def restored(self, member: Member) -> None:
        pass

    def receipt(self, member: Member, transaction: FineTransaction) -> None:
        pass


class MessageNotifier(Notifier):
    """
    Renders plain-text messages and delivers them through a ChannelProvider.

    With ``synchronous=True`` delivery happens on the calling thread, which
    tests use to observe sent messages deterministically. When ``storage`` is
    given, every notification is recorded with its delivery outcome.
    """

    def __init__(
        self,
        provider: ChannelProvider,
        sender: str = "noreply@library.com",
        max_workers: int = 2,
        synchronous: bool = False,
        storage: Optional[StorageInterface] = None,
        currency_symbol: str = "$"
    ):
        self.provider = provider
        self.sender = sender
        self.storage = storage
        self.notifications_table = "notifications"
        self.currency_symbol = currency_symbol
        self.synchronous = synchronous
        self.logger = get_logger("library_fines.notifications")
        self._executor = None if synchronous else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notifier"
        )

    def warn(self, member: Member, loan: Loan) -> None:
        body = (
            f"Dear {member.full_name},\n\n"
            f"You have accumulated fines of {self._format(member.current_fines_due)} for overdue books.\n"
            f"Book: {loan.display_title}\n"
            f"Due Date: {loan.due_date.isoformat()}\n"
            f"Days Overdue: {loan.days_overdue}\n"
            f"Current Fine: {self._format(loan.fine_amount)}\n\n"
            "Please return the book and pay your fines to avoid restrictions.\n\n"
            "Thank you,\nLibrary Management System"
        )
        self._dispatch(NotificationType.FINE_WARNING, member, "Library Fine Warning", body,
                       {"loan_id": loan.id, "fines_due": str(member.current_fines_due)})

    def banned(self, member: Member, loan: Loan) -> None:
        ban_end = member.ban_end_date.isoformat() if member.ban_end_date else "further notice"
        body = (
            f"Dear {member.full_name},\n\n"
            "Your library membership has been suspended due to excessive overdue items.\n"
            f"Reason: {member.ban_reason}\n"
            f"Book: {loan.display_title} (Overdue by {loan.days_overdue} days)\n"
            f"Ban Period: {member.ban_start_date} to {ban_end}\n\n"
            "Please contact the library to resolve this issue.\n\n"
            "Thank you,\nLibrary Management System"
        )
        self._dispatch(NotificationType.MEMBER_BANNED, member, "Library Membership Suspended", body,
                       {"loan_id": loan.id})

    def restored(self, member: Member) -> None:
        body = (
            f"Dear {member.full_name},\n\n"
            "Your library membership has been restored.\n"
            "You can now borrow books again.\n\n"
            "Thank you,\nLibrary Management System"
        )
        self._dispatch(NotificationType.MEMBERSHIP_RESTORED, member, "Library Membership Restored", body)

    def receipt(self, member: Member, transaction: FineTransaction) -> None:
        body = (
            f"Dear {member.full_name},\n\n"
            "Payment Receipt\n"
            f"Receipt #: {transaction.receipt_number}\n"
            f"Date: {transaction.transaction_date.strftime('%Y-%m-%d %H:%M')}\n"
            f"Amount: {self._format(transaction.amount)}\n"
            f"Payment Method: {transaction.payment_method.value}\n"
            f"Reference: {transaction.payment_reference}\n\n"
            "Thank you for your payment.\n\n"
            "Library Management System"
        )
        self._dispatch(NotificationType.PAYMENT_RECEIPT, member, "Fine Payment Receipt", body,
                       {"receipt_number": transaction.receipt_number})

    def _dispatch(self, notification_type: NotificationType, member: Member,
                  subject: str, body: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if not member.email:
            self.logger.debug(f"Member {member.id} has no email; {notification_type.value} not sent")
            return

        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notification_type=notification_type,
            recipient_id=member.id,
            recipient_address=member.email,
            sender=self.sender,
            subject=subject,
            body=body,
            metadata=metadata or {}
        )

        if self._executor is None:
            self._deliver(notification)
        else:
            self._executor.submit(self._deliver, notification)

    def _deliver(self, notification: Notification) -> None:
        try:
            delivered = self.provider.send(notification)
        except NotificationFailure as e:
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = str(e)
            self.logger.warning(f"Notification {notification.id} failed: {e}")
        except Exception as e:
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = str(e)
            self.logger.exception(f"Notification provider {self.provider.name} crashed: {e}")
        else:
            if delivered:
                notification.status = NotificationStatus.SENT
                self.logger.info(
                    f"{notification.notification_type.value} sent to {notification.recipient_address}"
                )
            else:
                notification.status = NotificationStatus.FAILED
                notification.failed_reason = "provider declined"
                self.logger.warning(
                    f"Notification {notification.id} declined by {self.provider.name} provider"
                )

        self._record(notification)

    def _record(self, notification: Notification) -> None:
        if self.storage is None:
            return
        notification.updated_at = datetime.now(timezone.utc)
        try:
            self.storage.save(self.notifications_table, notification.id,
                              self._notification_to_dict(notification))
        except Exception as e:
            self.logger.error(f"Could not record notification {notification.id}: {e}")

    def get_notifications(
        self,
        recipient_id: str,
        status: Optional[NotificationStatus] = None
    ) -> List[Notification]:
        """Recorded notifications for a member, newest first"""
        if self.storage is None:
            return []
        filters = {"recipient_id": recipient_id}
        if status:
            filters["status"] = status.value

        records = self.storage.find(self.notifications_table, filters)
        notifications = [self._notification_from_dict(data) for data in records]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications

    def _format(self, money: Money) -> str:
        return money.to_string(self.currency_symbol)

    @staticmethod
    def _notification_to_dict(notification: Notification) -> Dict[str, Any]:
        result = notification.to_dict()
        result["notification_type"] = notification.notification_type.value
        result["status"] = notification.status.value
        return result

    @staticmethod
    def _notification_from_dict(data: Dict[str, Any]) -> Notification:
        data = dict(data)
        data["notification_type"] = NotificationType(data["notification_type"])
        data["status"] = NotificationStatus(data["status"])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return Notification(**data)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def notify_safely(logger: logging.Logger, send: Callable[..., None], *args) -> None:
    """
    Invoke a Notifier method, logging any failure. Fine, ban and payment
    operations call their notifier only through this.
    """
    try:
        send(*args)
    except Exception as e:
        logger.warning(f"Notification {getattr(send, '__name__', send)} failed: {e}")


def build_provider(channel: str, webhook_url: Optional[str] = None,
                   timeout: float = 5.0) -> ChannelProvider:
    """Channel provider for a configured channel name"""
    if channel == "log":
        return LogChannelProvider()
    if channel == "webhook":
        if not webhook_url:
            raise ValueError("notification_webhook_url is required for the webhook channel")
        return WebhookChannelProvider(webhook_url, timeout=timeout)
    raise ValueError(f"Unknown notification channel: {channel}")
