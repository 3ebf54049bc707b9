"""
Append-only side effects: access logs and notifications.
"""

import logging

from sqlalchemy import select

from healthledger.database import AccessLog, Notification, normalize_wallet, utcnow
from healthledger.errors import NotFound

logger = logging.getLogger(__name__)


class ActivityLog:
    def __init__(self, cache):
        self.cache = cache

    def log_access(self, record_id, accessor_wallet, accessor_role, action, origin=None, user_agent=None):
        """Add a new access log entry. Entries are never updated."""
        entry = AccessLog(
            record_id=str(record_id),
            accessor_wallet=normalize_wallet(accessor_wallet),
            accessor_role=accessor_role,
            action=action,
            origin=origin,
            user_agent=user_agent,
            timestamp=utcnow(),
        )
        return self.cache.insert(entry)

    def list_access_logs(self, record_id, limit=100):
        with self.cache.session() as db:
            rows = db.scalars(
                select(AccessLog)
                .where(AccessLog.record_id == str(record_id))
                .order_by(AccessLog.timestamp.desc(), AccessLog.id.desc())
                .limit(limit)
            )
            return list(rows)

    def notify(self, recipient_wallet, title, message, type, related_record_id=None):
        notification = Notification(
            recipient_wallet=normalize_wallet(recipient_wallet),
            title=title,
            message=message,
            type=type,
            related_record_id=related_record_id,
            is_read=False,
            created_at=utcnow(),
        )
        return self.cache.insert(notification)

    def list_notifications(self, wallet_address, unread_only=False, limit=50):
        query = select(Notification).where(Notification.recipient_wallet == normalize_wallet(wallet_address))
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        with self.cache.session() as db:
            rows = db.scalars(query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit))
            return list(rows)

    def mark_read(self, notification_id, wallet_address):
        """
        Flip is_read false -> true for the recipient. Marking an already read
        notification is a no-op, and someone else's notification is NotFound.
        """
        with self.cache.session() as db:
            notification = db.get(Notification, notification_id)
            if notification is None or notification.recipient_wallet != normalize_wallet(wallet_address):
                raise NotFound(f"Notification {notification_id} not found")
            if not notification.is_read:
                notification.is_read = True
            return notification
