from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.opsdesk.db import db_session
from app.opsdesk.errors import register_error_handlers
from app.opsdesk.modules.notifications.service import list_for_user, mark_read
from app.opsdesk.rbac import require_login

bp = Blueprint("notifications", __name__)
register_error_handlers(bp)


def _to_dict(n) -> dict:
    return {
        "id": n.id,
        "systemId": n.system_id,
        "type": n.type,
        "message": n.message,
        "createdAt": n.created_at.isoformat() if n.created_at else None,
        "readAt": n.read_at.isoformat() if n.read_at else None,
    }


@bp.get("/notifications")
@require_login
def my_notifications():
    s = db_session()
    unread_only = (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes")
    rows = list_for_user(s, g.current_user, unread_only=unread_only)
    return jsonify([_to_dict(n) for n in rows])


@bp.post("/notifications/<int:notification_id>/read")
@require_login
def read_notification(notification_id: int):
    s = db_session()
    n = mark_read(s, notification_id, g.current_user)
    s.commit()
    return jsonify(_to_dict(n))
