from __future__ import annotations

from datetime import datetime
from typing import Any

from app.opsdesk.audit import decode_metadata
from app.opsdesk.models import AuditEvent
from app.opsdesk.modules.systems.acknowledgements import NOT_ASSIGNED, AcknowledgementState
from app.opsdesk.modules.systems.models import (
    System,
    SystemAcknowledgement,
    SystemComment,
    SystemLink,
)
from app.opsdesk.modules.systems.service import AssignmentView, SystemDetail, SystemSummary


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def parse_bool_arg(raw: str | None) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")


def viewer_status(state: AcknowledgementState) -> str | None:
    """The list view reports "not assigned" as null."""
    return None if state.status == NOT_ASSIGNED else state.status


def system_to_dict(system: System) -> dict[str, Any]:
    return {
        "id": system.id,
        "title": system.title,
        "category": system.category,
        "status": system.status,
        "description": system.description,
        "version": system.version,
        "createdBy": system.created_by_user_id,
        "createdAt": iso(system.created_at),
        "updatedBy": system.updated_by_user_id,
        "updatedAt": iso(system.updated_at),
    }


def summary_to_dict(summary: SystemSummary) -> dict[str, Any]:
    out = system_to_dict(summary.system)
    out.update(
        {
            "assignedUserCount": summary.assigned_user_count,
            "pendingAcknowledgements": summary.pending_acknowledgements,
            "userAcknowledgementStatus": viewer_status(summary.viewer_state),
        }
    )
    return out


def link_to_dict(link: SystemLink) -> dict[str, Any]:
    return {
        "id": link.id,
        "title": link.title,
        "url": link.url,
        "description": link.description,
        "sortOrder": link.sort_order,
        "addedBy": link.added_by_user_id,
        "createdAt": iso(link.created_at),
    }


def assignment_to_dict(view: AssignmentView) -> dict[str, Any]:
    a = view.assignment
    return {
        "id": a.id,
        "userId": a.user_id,
        "userEmail": a.user.email if a.user else None,
        "assignedBy": a.assigned_by_user_id,
        "assignedAt": iso(a.assigned_at),
        "requiresAcknowledgement": a.requires_acknowledgement,
        "status": view.state.status,
        "acknowledgedAt": iso(view.state.acknowledged_at),
        "acknowledgedVersion": view.state.acknowledged_version,
    }


def comment_to_dict(comment: SystemComment) -> dict[str, Any]:
    return {
        "id": comment.id,
        "userId": comment.user_id,
        "content": comment.content,
        "isEdited": comment.is_edited,
        "createdAt": iso(comment.created_at),
        "updatedAt": iso(comment.updated_at),
    }


def acknowledgement_to_dict(ack: SystemAcknowledgement) -> dict[str, Any]:
    return {
        "id": ack.id,
        "systemId": ack.system_id,
        "userId": ack.user_id,
        "version": ack.version,
        "acknowledgedAt": iso(ack.acknowledged_at),
        "notes": ack.notes,
    }


def detail_to_dict(detail: SystemDetail) -> dict[str, Any]:
    out = system_to_dict(detail.system)
    out.update(
        {
            "links": [link_to_dict(link) for link in detail.links],
            "assignments": [assignment_to_dict(v) for v in detail.assignments],
            "comments": [comment_to_dict(c) for c in detail.comments],
            "acknowledgements": [acknowledgement_to_dict(a) for a in detail.acknowledgements],
        }
    )
    return out


def audit_event_to_dict(ev: AuditEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "userId": ev.actor_user_id,
        "userEmail": ev.actor_user_email,
        "action": ev.action,
        "details": decode_metadata(ev),
        "createdAt": iso(ev.created_at),
    }
