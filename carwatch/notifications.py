# carwatch/notifications.py
"""Fan a committed change event out to the vehicle's watchers."""
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import List, Optional

from . import crud
from .changes import ChangeEvent
from .db import Database
from .delivery import EmailSender
from .errors import DeliveryError
from .models import (
    ListingStatus, Notification, NotificationChannel, NotificationType, Vehicle, WatchlistEntry,
)
from .utils import get_logger, format_money, utcnow

logger = get_logger("carwatch.notifications")

_RELIST_FROM = {ListingStatus.SOLD.value, ListingStatus.REMOVED.value}


@dataclass
class PendingEmail:
    notification_id: str
    to: str
    subject: str
    body: str


def is_relist(previous_status: str, new_status: str) -> bool:
    if new_status == ListingStatus.RELISTED.value:
        return True
    return previous_status in _RELIST_FROM and new_status == ListingStatus.ACTIVE.value


def classify(entry: WatchlistEntry, event: ChangeEvent) -> Optional[NotificationType]:
    """Apply the watcher's preferences; None means the watcher is skipped."""
    if event.is_price:
        amount = event.change_amount
        if amount < 0 and not entry.notify_price_drop:
            return None
        if amount > 0 and not entry.notify_price_rise:
            return None
        if entry.price_drop_threshold is not None and abs(amount) < entry.price_drop_threshold:
            return None
        if entry.target_price is not None and event.new_value <= entry.target_price:
            return NotificationType.TARGET_PRICE_HIT
        return NotificationType.PRICE_DROP if amount < 0 else NotificationType.PRICE_RISE

    if not entry.notify_status_change:
        return None
    if is_relist(event.previous_value, event.new_value):
        if not entry.notify_relist:
            return None
        return NotificationType.RELIST_DETECTED
    return NotificationType.STATUS_CHANGE


def render(ntype: NotificationType, vehicle: Vehicle, event: ChangeEvent):
    name = vehicle.display_name
    if ntype is NotificationType.PRICE_DROP:
        return (
            f"Price Drop: {name}",
            f"Price dropped from {format_money(event.previous_value)} to {format_money(event.new_value)} "
            f"({abs(event.change_percent):.1f}% off)",
        )
    if ntype is NotificationType.PRICE_RISE:
        return (
            f"Price Increase: {name}",
            f"Price increased from {format_money(event.previous_value)} to {format_money(event.new_value)} "
            f"(+{event.change_percent:.1f}%)",
        )
    if ntype is NotificationType.TARGET_PRICE_HIT:
        return (
            f"Target Price Hit: {name}",
            f"The vehicle is now at your target price of {format_money(event.new_value)}!",
        )
    if ntype is NotificationType.RELIST_DETECTED:
        return (
            f"Relisted: {name}",
            "This vehicle has been relisted. It may be back on the market!",
        )
    return (
        f"Status Update: {name}",
        f"Status changed from {event.previous_value} to {event.new_value}",
    )


class NotificationDispatcher:
    """Persists one notification per eligible watcher, then delivers them.

    Deliveries for one event run in parallel on a bounded pool. Calling
    ``dispatch`` twice for the same event notifies twice.
    """

    def __init__(self, database: Database, email_sender: EmailSender, frontend_url: str = "",
                 max_workers: int = 4, delivery_timeout: float = 30):
        self.database = database
        self.email_sender = email_sender
        self.frontend_url = frontend_url.rstrip("/")
        self.delivery_timeout = delivery_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify") if max_workers > 1 else None

    @classmethod
    def from_settings(cls, settings, database, email_sender):
        return cls(
            database,
            email_sender,
            frontend_url=settings.FRONTEND_URL,
            max_workers=settings.NOTIFY_WORKERS,
            delivery_timeout=settings.SMTP_TIMEOUT_SECONDS * 3,
        )

    def dispatch(self, event: ChangeEvent) -> List[str]:
        """Returns the ids of the notifications created for ``event``."""
        created, outbox = self._persist(event)
        if outbox:
            self._deliver_all(outbox)
        return created

    def _persist(self, event: ChangeEvent):
        created, outbox = [], []
        with self.database.session_scope() as db:
            vehicle = db.get(Vehicle, event.vehicle_id)
            if vehicle is None:
                logger.warning("Vehicle %s vanished before fan-out of %s", event.vehicle_id, event.change_id)
                return created, outbox
            watchers = crud.list_watchers(db, event.vehicle_id, exclude_user_id=event.triggered_by_user_id)
            now = utcnow()
            for entry in watchers:
                ntype = classify(entry, event)
                if ntype is None:
                    continue
                title, body = render(ntype, vehicle, event)
                user = entry.user
                wants_email = bool(user and user.email_notifications and user.email)
                notification = Notification(
                    user_id=entry.user_id,
                    vehicle_id=vehicle.id,
                    type=ntype.value,
                    title=title,
                    body=body,
                    price_change_id=event.change_id if event.is_price else None,
                    status_change_id=None if event.is_price else event.change_id,
                    channel=(NotificationChannel.EMAIL if wants_email else NotificationChannel.IN_APP).value,
                    created_at=now,
                    # in-app notifications are delivered by being stored
                    sent_at=None if wants_email else now,
                )
                db.add(notification)
                # stamped with the row, before delivery; a failed send still counts as notified
                entry.last_notified_at = now
                db.flush()
                created.append(notification.id)
                if wants_email:
                    outbox.append(PendingEmail(notification.id, user.email, title, self._email_body(vehicle, body)))
            logger.info(
                "%s on vehicle %s: %d of %d watchers notified",
                event.kind, event.vehicle_id, len(created), len(watchers),
            )
        return created, outbox

    def _email_body(self, vehicle: Vehicle, body: str) -> str:
        lines = [body, ""]
        if vehicle.source_urls:
            lines.append(f"View listing: {vehicle.source_urls[0]}")
        if self.frontend_url:
            lines.append(f"Open watchlist: {self.frontend_url}/watchlist")
        return "\n".join(lines)

    def _deliver_all(self, outbox: List[PendingEmail]):
        if self._executor is None:
            for item in outbox:
                self._deliver(item)
            return
        futures = [self._executor.submit(self._deliver, item) for item in outbox]
        done, not_done = wait(futures, timeout=self.delivery_timeout)
        if not_done:
            logger.warning("%d notification emails still in flight after %ss", len(not_done), self.delivery_timeout)

    def _deliver(self, item: PendingEmail) -> bool:
        try:
            self.email_sender.send(item.to, item.subject, item.body)
        except DeliveryError as e:
            logger.error("Failed to send notification %s: %s", item.notification_id, e)
            return False
        except Exception:
            logger.exception("Unexpected error sending notification %s", item.notification_id)
            return False
        with self.database.session_scope() as db:
            crud.mark_sent(db, item.notification_id)
        return True

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
