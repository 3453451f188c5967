"""
Systems JSON API.

Request bodies use camelCase; columns are snake_case. Every handler resolves
the acting user from the session and passes it into the service layer, which
raises opsdesk.errors exceptions that are turned into JSON below.
"""

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.opsdesk.db import db_session
from app.opsdesk.errors import ValidationError, register_error_handlers
from app.opsdesk.models import User
from app.opsdesk.modules.systems import service
from app.opsdesk.modules.systems.acknowledgements import AcknowledgementPolicy
from app.opsdesk.modules.systems.utils import (
    acknowledgement_to_dict,
    audit_event_to_dict,
    comment_to_dict,
    detail_to_dict,
    iso,
    link_to_dict,
    parse_bool_arg,
    summary_to_dict,
    system_to_dict,
)
from app.opsdesk.rbac import require_permission

bp = Blueprint("systems", __name__)
register_error_handlers(bp)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        # RBAC decorator should prevent this.
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def _optional_int(raw, name: str) -> int | None:
    if raw is None or raw == "":
        return None
    value = service.whole_int(raw)
    if value is None:
        raise ValidationError(f"{name} must be an integer.", details={name: "invalid"})
    return value


def _client_ip() -> str | None:
    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return forwarded or request.headers.get("X-Real-IP") or request.remote_addr


# ---------- Systems ----------
@bp.get("/systems")
@require_permission("systems.view")
def list_systems():
    s = db_session()
    u = _current_user()
    summaries = service.list_systems(
        s,
        u,
        status=(request.args.get("status") or "").strip() or None,
        category=(request.args.get("category") or "").strip() or None,
        search=(request.args.get("search") or "").strip() or None,
        sort=request.args.get("sort"),
        assigned_to_me=parse_bool_arg(request.args.get("assigned_to_me")),
        needs_acknowledgement=parse_bool_arg(request.args.get("needs_acknowledgement")),
    )
    return jsonify([summary_to_dict(x) for x in summaries])


@bp.post("/systems")
@require_permission("systems.create")
def create_system():
    s = db_session()
    u = _current_user()
    system = service.create_system(s, _json_body(), u)
    s.commit()
    current_app.logger.info("System %s created by user_id=%s", system.id, u.id)
    return jsonify(detail_to_dict(service.system_detail(s, system.id))), 201


@bp.get("/systems/<int:system_id>")
@require_permission("systems.view")
def get_system(system_id: int):
    s = db_session()
    return jsonify(detail_to_dict(service.system_detail(s, system_id)))


@bp.put("/systems/<int:system_id>")
@require_permission("systems.edit")
def update_system(system_id: int):
    s = db_session()
    u = _current_user()
    payload = _json_body()
    expected = _optional_int(payload.get("expectedVersion", payload.get("expected_version")), "expectedVersion")

    result = service.apply_edit(
        s,
        system_id,
        payload,
        u,
        expected_version=expected,
        retries=int(current_app.config.get("EDIT_CONFLICT_RETRIES", 2)),
    )
    s.commit()

    body = system_to_dict(result.system)
    body.update(
        {
            "substantiveChange": result.decision.substantive,
            "previousVersion": result.decision.old_version,
            "notifiedUserIds": result.notified_user_ids,
        }
    )
    return jsonify(body)


@bp.delete("/systems/<int:system_id>")
@require_permission("systems.delete")
def delete_system(system_id: int):
    s = db_session()
    u = _current_user()
    system = service.delete_system(s, system_id, u)
    s.commit()
    return jsonify({"success": True, "deletedAt": iso(system.deleted_at)})


@bp.post("/systems/<int:system_id>/acknowledge")
@require_permission("systems.acknowledge")
def acknowledge_system(system_id: int):
    s = db_session()
    u = _current_user()
    payload = _json_body()
    ack = service.acknowledge(
        s,
        system_id,
        u,
        notes=payload.get("notes"),
        ip_address=_client_ip(),
        policy=AcknowledgementPolicy.from_config(current_app.config),
    )
    s.commit()
    return jsonify(acknowledgement_to_dict(ack)), 201


@bp.get("/systems/<int:system_id>/audit")
@require_permission("systems.view")
def system_audit(system_id: int):
    s = db_session()
    return jsonify([audit_event_to_dict(ev) for ev in service.audit_log(s, system_id)])


# ---------- Assignments ----------
@bp.post("/systems/<int:system_id>/assignments")
@require_permission("systems.assign")
def assign_users(system_id: int):
    s = db_session()
    u = _current_user()
    payload = _json_body()
    created = service.assign_users(s, system_id, payload.get("userIds", payload.get("user_ids")), u)
    s.commit()
    return (
        jsonify(
            {
                "assignments": [
                    {
                        "id": a.id,
                        "userId": a.user_id,
                        "assignedBy": a.assigned_by_user_id,
                        "assignedAt": iso(a.assigned_at),
                        "requiresAcknowledgement": a.requires_acknowledgement,
                    }
                    for a in created
                ]
            }
        ),
        201,
    )


@bp.delete("/systems/<int:system_id>/assignments")
@require_permission("systems.assign")
def unassign_user(system_id: int):
    s = db_session()
    u = _current_user()
    removed = service.unassign(
        s,
        system_id,
        u,
        assignment_id=_optional_int(request.args.get("assignmentId"), "assignmentId"),
        user_id=_optional_int(request.args.get("userId"), "userId"),
    )
    s.commit()
    return jsonify({"success": True, "removed": removed})


# ---------- Links ----------
@bp.post("/systems/<int:system_id>/links")
@require_permission("systems.edit")
def add_link(system_id: int):
    s = db_session()
    u = _current_user()
    link = service.add_link(s, system_id, _json_body(), u)
    s.commit()
    return jsonify(link_to_dict(link)), 201


@bp.put("/systems/<int:system_id>/links/<int:link_id>")
@require_permission("systems.edit")
def update_link(system_id: int, link_id: int):
    s = db_session()
    u = _current_user()
    link = service.update_link(s, system_id, link_id, _json_body(), u)
    s.commit()
    return jsonify(link_to_dict(link))


@bp.delete("/systems/<int:system_id>/links/<int:link_id>")
@require_permission("systems.edit")
def delete_link(system_id: int, link_id: int):
    s = db_session()
    u = _current_user()
    service.delete_link(s, system_id, link_id, u)
    s.commit()
    return jsonify({"success": True})


# ---------- Comments ----------
@bp.get("/systems/<int:system_id>/comments")
@require_permission("systems.view")
def list_comments(system_id: int):
    s = db_session()
    system = service.get_live_system(s, system_id)
    return jsonify([comment_to_dict(c) for c in service.list_comments(s, system.id)])


@bp.post("/systems/<int:system_id>/comments")
@require_permission("systems.comment")
def add_comment(system_id: int):
    s = db_session()
    u = _current_user()
    comment = service.add_comment(s, system_id, _json_body().get("content"), u)
    s.commit()
    return jsonify(comment_to_dict(comment)), 201


@bp.put("/systems/<int:system_id>/comments/<int:comment_id>")
@require_permission("systems.comment")
def update_comment(system_id: int, comment_id: int):
    s = db_session()
    u = _current_user()
    comment = service.update_comment(s, system_id, comment_id, _json_body().get("content"), u)
    s.commit()
    return jsonify(comment_to_dict(comment))


@bp.delete("/systems/<int:system_id>/comments/<int:comment_id>")
@require_permission("systems.comment")
def delete_comment(system_id: int, comment_id: int):
    s = db_session()
    u = _current_user()
    service.delete_comment(s, system_id, comment_id, u)
    s.commit()
    return jsonify({"success": True})
