from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from app.opsdesk.errors import NotFoundError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.opsdesk.models import User
    from app.opsdesk.modules.notifications.models import SystemNotification

logger = logging.getLogger(__name__)

KIND_ASSIGNED = "assigned"
KIND_UPDATED = "updated"
KIND_COMMENT_ADDED = "comment_added"


def queue_notifications(
    s: "Session",
    *,
    system_id: int,
    user_ids: Iterable[int],
    kind: str,
    message: str,
) -> list["SystemNotification"]:
    """
    Add one outbox row per user to the caller's session.
    Nothing is committed here; rows land (or roll back) with the caller's change.
    """
    from app.opsdesk.modules.notifications.models import SystemNotification

    rows = [
        SystemNotification(system_id=system_id, user_id=uid, type=kind, message=message[:512])
        for uid in dict.fromkeys(user_ids)
    ]
    s.add_all(rows)
    if rows:
        logger.info("Queued %d %s notification(s) for system_id=%s", len(rows), kind, system_id)
    return rows


def list_for_user(s: "Session", user: "User", *, unread_only: bool = False, limit: int = 100) -> list["SystemNotification"]:
    from app.opsdesk.modules.notifications.models import SystemNotification

    q = s.query(SystemNotification).filter(SystemNotification.user_id == user.id)
    if unread_only:
        q = q.filter(SystemNotification.read_at.is_(None))
    return q.order_by(SystemNotification.created_at.desc(), SystemNotification.id.desc()).limit(limit).all()


def mark_read(s: "Session", notification_id: int, user: "User") -> "SystemNotification":
    from app.opsdesk.modules.notifications.models import SystemNotification

    n = s.get(SystemNotification, notification_id)
    # Other users' notifications look missing, not forbidden.
    if not n or n.user_id != user.id:
        raise NotFoundError("Notification", notification_id)
    if n.read_at is None:
        n.read_at = datetime.utcnow()
    return n
