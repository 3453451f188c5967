from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, update

from app.opsdesk.audit import record_event
from app.opsdesk.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from app.opsdesk.models import AuditEvent, User
from app.opsdesk.modules.notifications.service import (
    KIND_ASSIGNED,
    KIND_COMMENT_ADDED,
    KIND_UPDATED,
    queue_notifications,
)
from app.opsdesk.modules.systems.acknowledgements import (
    NEEDS_ACKNOWLEDGEMENT,
    NOT_ASSIGNED,
    UPDATE_REQUIRED,
    AcknowledgementPolicy,
    AcknowledgementState,
    pending_count,
    resolve_for_user,
    resolve_status,
)
from app.opsdesk.modules.systems.models import (
    System,
    SystemAcknowledgement,
    SystemAssignment,
    SystemComment,
    SystemLink,
)
from app.opsdesk.modules.systems.versioning import (
    STATUS_DRAFT,
    VALID_STATUSES,
    EditDecision,
    evaluate_edit,
    parse_edit_payload,
    snapshot_of,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

ENTITY_TYPE = "System"

SORT_FIELDS = {
    "title": System.title,
    "category": System.category,
    "status": System.status,
    "version": System.version,
    "created_at": System.created_at,
    "createdAt": System.created_at,
    "updated_at": System.updated_at,
    "updatedAt": System.updated_at,
}
DEFAULT_SORT = "updated_at"


def _now() -> datetime:
    return datetime.utcnow()


def _pick(payload: dict, *keys: str, default: Any = None) -> Any:
    """First present key wins; lets callers send camelCase or snake_case."""
    for k in keys:
        if k in payload:
            return payload[k]
    return default


def _audit(s: "Session", actor: User, system_id: int, action: str, metadata: dict | None = None) -> None:
    record_event(
        s,
        actor=actor,
        action=action,
        entity_type=ENTITY_TYPE,
        entity_id=str(system_id),
        metadata=metadata,
    )


# ---------- Lookups ----------

def get_live_system(s: "Session", system_id: int, *, refresh: bool = False) -> System:
    """Return a non-deleted system or raise NotFoundError."""
    system = s.get(System, system_id, populate_existing=refresh)
    if not system or system.deleted_at is not None:
        raise NotFoundError("System", system_id)
    return system


def active_assignments(s: "Session", system_id: int) -> list[SystemAssignment]:
    return (
        s.query(SystemAssignment)
        .filter(SystemAssignment.system_id == system_id)
        .filter(SystemAssignment.deleted_at.is_(None))
        .order_by(SystemAssignment.assigned_at.asc(), SystemAssignment.id.asc())
        .all()
    )


def acknowledgements_for(s: "Session", system_id: int) -> list[SystemAcknowledgement]:
    return (
        s.query(SystemAcknowledgement)
        .filter(SystemAcknowledgement.system_id == system_id)
        .order_by(SystemAcknowledgement.acknowledged_at.asc(), SystemAcknowledgement.id.asc())
        .all()
    )


def _active_assignment_for(s: "Session", system_id: int, user_id: int) -> SystemAssignment | None:
    return (
        s.query(SystemAssignment)
        .filter(SystemAssignment.system_id == system_id)
        .filter(SystemAssignment.user_id == user_id)
        .filter(SystemAssignment.deleted_at.is_(None))
        .order_by(SystemAssignment.id.asc())
        .first()
    )


# ---------- Validation ----------

def whole_int(raw: Any) -> int | None:
    """
    int for a JSON integer or a digit string, else None.
    Floats (2.9, 2.0), bools and "2.5" are not ids or versions; int() would truncate them.
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        if text.isascii() and text.isdigit():
            return int(text)
    return None


def parse_user_ids(raw: Any, *, field_name: str = "userIds") -> list[int]:
    """Accept a single id or a list; keep first-seen order, drop duplicates."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raw = [raw]
    out: list[int] = []
    for v in raw:
        uid = whole_int(v)
        if uid is None:
            raise ValidationError(f"{field_name} must contain user ids.", details={field_name: "invalid"})
        if uid not in out:
            out.append(uid)
    return out


def _ensure_users_exist(s: "Session", user_ids: list[int], *, field_name: str = "userIds") -> None:
    if not user_ids:
        return
    found = {
        uid
        for (uid,) in s.query(User.id).filter(User.id.in_(user_ids)).filter(User.is_active.is_(True)).all()
    }
    missing = [uid for uid in user_ids if uid not in found]
    if missing:
        raise ValidationError("Unknown or inactive user id(s).", details={field_name: missing})


def _require_text(payload: dict, key: str, errors: dict[str, str]) -> str | None:
    v = payload.get(key)
    if not isinstance(v, str) or not v.strip():
        errors[key] = "required"
        return None
    return v


def _parse_links(raw: Any) -> list[dict]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("links must be a list.", details={"links": "invalid"})
    links = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError("Each link must be an object.", details={f"links[{idx}]": "invalid"})
        errors: dict[str, str] = {}
        title = _require_text(item, "title", errors)
        url = _require_text(item, "url", errors)
        if errors:
            raise ValidationError("Each link needs a title and url.", details={f"links[{idx}]": errors})
        links.append({"title": title, "url": url, "description": (item.get("description") or None)})
    return links


def validate_system_payload(payload: dict) -> dict[str, str]:
    """Validate a create payload. Returns field -> problem (empty when acceptable)."""
    errors: dict[str, str] = {}
    _require_text(payload, "title", errors)
    _require_text(payload, "category", errors)
    status = payload.get("status")
    if status is not None and status not in VALID_STATUSES:
        errors["status"] = f"must be one of: {', '.join(VALID_STATUSES)}"
    description = payload.get("description")
    if description is not None and not isinstance(description, str):
        errors["description"] = "must be a string or null"
    return errors


# ---------- Create ----------

def create_system(s: "Session", payload: dict, actor: User) -> System:
    """Create a system at version 1 with optional inline links and assignees."""
    errors = validate_system_payload(payload)
    if errors:
        raise ValidationError("Invalid system fields.", details=errors)
    links = _parse_links(payload.get("links"))
    user_ids = parse_user_ids(_pick(payload, "assignedUserIds", "assigned_user_ids"), field_name="assignedUserIds")
    _ensure_users_exist(s, user_ids, field_name="assignedUserIds")

    now = _now()
    system = System(
        title=payload["title"],
        category=payload["category"],
        status=payload.get("status") or STATUS_DRAFT,
        description=payload.get("description") or None,
        version=1,
        created_at=now,
        created_by_user_id=actor.id,
        updated_at=now,
        updated_by_user_id=actor.id,
    )
    s.add(system)
    s.flush()

    _audit(s, actor, system.id, "created", {"title": system.title, "category": system.category, "status": system.status})

    for idx, link in enumerate(links):
        s.add(
            SystemLink(
                system_id=system.id,
                title=link["title"],
                url=link["url"],
                description=link["description"],
                sort_order=idx,
                added_by_user_id=actor.id,
                created_at=now,
            )
        )

    for uid in user_ids:
        s.add(
            SystemAssignment(
                system_id=system.id,
                user_id=uid,
                assigned_by_user_id=actor.id,
                assigned_at=now,
                requires_acknowledgement=True,
            )
        )
    queue_notifications(
        s,
        system_id=system.id,
        user_ids=user_ids,
        kind=KIND_ASSIGNED,
        message=f"You've been assigned to system: {system.title}",
    )
    s.flush()
    return system


# ---------- Edit ----------

@dataclass
class EditResult:
    system: System
    decision: EditDecision
    notified_user_ids: list[int] = field(default_factory=list)


def _conditional_write(s: "Session", system: System, decision: EditDecision, actor: User, now: datetime) -> bool:
    """UPDATE ... WHERE version = <version we read>. False when someone else won the race."""
    stmt = (
        update(System)
        .where(System.id == system.id)
        .where(System.version == decision.old_version)
        .where(System.deleted_at.is_(None))
        .values(
            title=decision.title,
            category=decision.category,
            status=decision.status,
            description=decision.description,
            version=decision.new_version,
            updated_at=now,
            updated_by_user_id=actor.id,
        )
        .execution_options(synchronize_session=False)
    )
    return s.execute(stmt).rowcount == 1


def apply_edit(
    s: "Session",
    system_id: int,
    payload: dict,
    actor: User,
    *,
    expected_version: int | None = None,
    retries: int = 2,
) -> EditResult:
    """
    Apply an edit to a live system.

    Substantive edits bump the version and queue an "updated" notification for
    every active assignee; minor edits keep the version. The write is
    conditional on the version that was read, so a concurrent edit is retried
    against fresh state (up to `retries` times) instead of being overwritten.
    """
    fields = parse_edit_payload(payload)

    attempt = 0
    while True:
        system = get_live_system(s, system_id, refresh=attempt > 0)
        if expected_version is not None and system.version != expected_version:
            raise ConflictError(
                "System was changed by someone else. Reload and try again.",
                details={"expectedVersion": expected_version, "currentVersion": system.version},
            )
        decision = evaluate_edit(snapshot_of(system), fields)
        now = _now()
        if _conditional_write(s, system, decision, actor, now):
            break
        attempt += 1
        logger.warning(
            "Version conflict editing system_id=%s (read version=%s, attempt=%s)",
            system_id,
            decision.old_version,
            attempt,
        )
        if attempt > retries:
            raise ConflictError(
                "System was changed by someone else. Reload and try again.",
                details={"readVersion": decision.old_version},
            )

    s.refresh(system)

    changes = {k: v for k, v in payload.items() if k not in ("csrf_token", "expectedVersion", "expected_version")}
    _audit(
        s,
        actor,
        system.id,
        decision.action,
        {
            "changes": changes,
            "changed_fields": list(decision.changed_fields),
            "old_version": decision.old_version,
            "new_version": decision.new_version,
        },
    )

    notified: list[int] = []
    if decision.substantive:
        notified = [a.user_id for a in active_assignments(s, system.id)]
        queue_notifications(
            s,
            system_id=system.id,
            user_ids=notified,
            kind=KIND_UPDATED,
            message=f"{actor.label} updated system: {system.title}. Please review and acknowledge.",
        )
        notified = list(dict.fromkeys(notified))
    return EditResult(system=system, decision=decision, notified_user_ids=notified)


# ---------- Delete ----------

def delete_system(s: "Session", system_id: int, actor: User) -> System:
    system = get_live_system(s, system_id)
    system.deleted_at = _now()
    _audit(s, actor, system.id, "deleted", {"title": system.title, "version": system.version})
    return system


# ---------- Acknowledge ----------

def acknowledge(
    s: "Session",
    system_id: int,
    actor: User,
    *,
    notes: str | None = None,
    ip_address: str | None = None,
    policy: AcknowledgementPolicy | None = None,
) -> SystemAcknowledgement:
    """
    Record that `actor` has read the system at its current version.
    Always appends; an existing acknowledgement for the same version is left alone.
    """
    if notes is not None and not isinstance(notes, str):
        raise ValidationError("notes must be a string.", details={"notes": "invalid"})
    system = get_live_system(s, system_id)
    (policy or AcknowledgementPolicy()).check(_active_assignment_for(s, system.id, actor.id))

    ack = SystemAcknowledgement(
        system_id=system.id,
        user_id=actor.id,
        version=system.version,
        acknowledged_at=_now(),
        ip_address=ip_address,
        notes=notes or None,
    )
    s.add(ack)
    s.flush()
    _audit(s, actor, system.id, "acknowledged", {"version": system.version, "has_notes": bool(notes)})
    return ack


# ---------- Assignments ----------

def assign_users(s: "Session", system_id: int, user_ids_raw: Any, actor: User) -> list[SystemAssignment]:
    system = get_live_system(s, system_id)
    user_ids = parse_user_ids(user_ids_raw)
    if not user_ids:
        raise ValidationError("userIds is required.", details={"userIds": "required"})
    _ensure_users_exist(s, user_ids)

    already = [a.user_id for a in active_assignments(s, system.id) if a.user_id in user_ids]
    if already:
        raise ConflictError("One or more users are already assigned", details={"userIds": sorted(set(already))})

    now = _now()
    created = [
        SystemAssignment(
            system_id=system.id,
            user_id=uid,
            assigned_by_user_id=actor.id,
            assigned_at=now,
            requires_acknowledgement=True,
        )
        for uid in user_ids
    ]
    s.add_all(created)
    s.flush()

    queue_notifications(
        s,
        system_id=system.id,
        user_ids=user_ids,
        kind=KIND_ASSIGNED,
        message=f"You've been assigned to system: {system.title}",
    )
    _audit(s, actor, system.id, "users_assigned", {"user_ids": user_ids, "count": len(user_ids)})
    return created


def unassign(
    s: "Session",
    system_id: int,
    actor: User,
    *,
    assignment_id: int | None = None,
    user_id: int | None = None,
) -> int:
    """Soft-delete matching active assignment(s). Returns how many were removed."""
    if assignment_id is None and user_id is None:
        raise ValidationError("Either assignmentId or userId is required")
    system = get_live_system(s, system_id)

    q = (
        s.query(SystemAssignment)
        .filter(SystemAssignment.system_id == system.id)
        .filter(SystemAssignment.deleted_at.is_(None))
    )
    if assignment_id is not None:
        q = q.filter(SystemAssignment.id == assignment_id)
    else:
        q = q.filter(SystemAssignment.user_id == user_id)
    rows = q.all()
    if not rows:
        raise NotFoundError("Assignment", assignment_id if assignment_id is not None else user_id)

    now = _now()
    for row in rows:
        row.deleted_at = now
    _audit(
        s,
        actor,
        system.id,
        "user_unassigned",
        {"assignment_id": assignment_id, "removed_user_id": user_id, "count": len(rows)},
    )
    return len(rows)


# ---------- Read models ----------

@dataclass
class AssignmentView:
    assignment: SystemAssignment
    state: AcknowledgementState


@dataclass
class SystemDetail:
    system: System
    links: list[SystemLink]
    assignments: list[AssignmentView]
    comments: list[SystemComment]
    acknowledgements: list[SystemAcknowledgement]


@dataclass
class SystemSummary:
    system: System
    assigned_user_count: int
    pending_acknowledgements: int
    viewer_state: AcknowledgementState


def system_detail(s: "Session", system_id: int) -> SystemDetail:
    system = get_live_system(s, system_id)
    assignments = active_assignments(s, system.id)
    acks = acknowledgements_for(s, system.id)

    views = [
        AssignmentView(
            assignment=a,
            state=resolve_status(system.version, a, [ack for ack in acks if ack.user_id == a.user_id]),
        )
        for a in assignments
    ]
    return SystemDetail(
        system=system,
        links=list_links(s, system.id),
        assignments=views,
        comments=list_comments(s, system.id),
        acknowledgements=acks,
    )


def _parse_sort(sort: str | None):
    sort = (sort or DEFAULT_SORT).strip() or DEFAULT_SORT
    descending = sort.startswith("-")
    name = sort[1:] if descending else sort
    col = SORT_FIELDS.get(name)
    if col is None:
        allowed = "title, category, status, version, created_at, updated_at"
        raise ValidationError("Unsupported sort field.", details={"sort": f"must be one of: {allowed}"})
    return (col.desc(), System.id.desc()) if descending else (col.asc(), System.id.asc())


def list_systems(
    s: "Session",
    viewer: User,
    *,
    status: str | None = None,
    category: str | None = None,
    search: str | None = None,
    sort: str | None = None,
    assigned_to_me: bool = False,
    needs_acknowledgement: bool = False,
) -> list[SystemSummary]:
    q = s.query(System).filter(System.deleted_at.is_(None))
    if status:
        q = q.filter(System.status == status)
    if category:
        q = q.filter(System.category == category)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(System.title.ilike(like), System.description.ilike(like)))
    systems = q.order_by(*_parse_sort(sort)).all()

    ids = [sys_.id for sys_ in systems]
    assignments_by: dict[int, list[SystemAssignment]] = {}
    acks_by: dict[int, list[SystemAcknowledgement]] = {}
    if ids:
        for a in (
            s.query(SystemAssignment)
            .filter(SystemAssignment.system_id.in_(ids))
            .filter(SystemAssignment.deleted_at.is_(None))
            .all()
        ):
            assignments_by.setdefault(a.system_id, []).append(a)
        for ack in s.query(SystemAcknowledgement).filter(SystemAcknowledgement.system_id.in_(ids)).all():
            acks_by.setdefault(ack.system_id, []).append(ack)

    out: list[SystemSummary] = []
    for system in systems:
        assignments = assignments_by.get(system.id, [])
        acks = acks_by.get(system.id, [])
        viewer_state = resolve_for_user(system.version, viewer.id, assignments, acks)
        if assigned_to_me and viewer_state.status == NOT_ASSIGNED:
            continue
        if needs_acknowledgement and viewer_state.status not in (NEEDS_ACKNOWLEDGEMENT, UPDATE_REQUIRED):
            continue
        out.append(
            SystemSummary(
                system=system,
                assigned_user_count=len(assignments),
                pending_acknowledgements=pending_count(system.version, assignments, acks),
                viewer_state=viewer_state,
            )
        )
    return out


def audit_log(s: "Session", system_id: int) -> list[AuditEvent]:
    # Deleted systems keep a readable history.
    if not s.get(System, system_id):
        raise NotFoundError("System", system_id)
    return (
        s.query(AuditEvent)
        .filter(AuditEvent.entity_type == ENTITY_TYPE)
        .filter(AuditEvent.entity_id == str(system_id))
        .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        .all()
    )


# ---------- Links ----------

def list_links(s: "Session", system_id: int) -> list[SystemLink]:
    return (
        s.query(SystemLink)
        .filter(SystemLink.system_id == system_id)
        .filter(SystemLink.deleted_at.is_(None))
        .order_by(SystemLink.sort_order.asc(), SystemLink.id.asc())
        .all()
    )


def _get_link_or_404(s: "Session", system_id: int, link_id: int) -> SystemLink:
    link = s.get(SystemLink, link_id)
    if not link or link.system_id != system_id or link.deleted_at is not None:
        raise NotFoundError("Link", link_id)
    return link


def add_link(s: "Session", system_id: int, payload: dict, actor: User) -> SystemLink:
    system = get_live_system(s, system_id)
    errors: dict[str, str] = {}
    title = _require_text(payload, "title", errors)
    url = _require_text(payload, "url", errors)
    if errors:
        raise ValidationError("title and url are required.", details=errors)

    sort_order = _pick(payload, "sortOrder", "sort_order")
    if sort_order is None:
        current_max = (
            s.query(func.max(SystemLink.sort_order))
            .filter(SystemLink.system_id == system.id)
            .filter(SystemLink.deleted_at.is_(None))
            .scalar()
        )
        sort_order = 0 if current_max is None else current_max + 1
    elif isinstance(sort_order, bool) or not isinstance(sort_order, int):
        raise ValidationError("sortOrder must be an integer.", details={"sortOrder": "invalid"})

    link = SystemLink(
        system_id=system.id,
        title=title,
        url=url,
        description=payload.get("description") or None,
        sort_order=sort_order,
        added_by_user_id=actor.id,
        created_at=_now(),
    )
    s.add(link)
    s.flush()
    _audit(s, actor, system.id, "link_added", {"link_id": link.id, "title": link.title, "url": link.url})
    return link


def update_link(s: "Session", system_id: int, link_id: int, payload: dict, actor: User) -> SystemLink:
    system = get_live_system(s, system_id)
    link = _get_link_or_404(s, system.id, link_id)

    errors: dict[str, str] = {}
    for key in ("title", "url"):
        if key in payload:
            value = _require_text(payload, key, errors)
            if value is not None:
                setattr(link, key, value)
    if errors:
        raise ValidationError("title and url cannot be empty.", details=errors)
    if "description" in payload:
        link.description = payload.get("description") or None

    _audit(s, actor, system.id, "link_updated", {"link_id": link.id, "title": link.title, "url": link.url})
    return link


def delete_link(s: "Session", system_id: int, link_id: int, actor: User) -> SystemLink:
    system = get_live_system(s, system_id)
    link = _get_link_or_404(s, system.id, link_id)
    link.deleted_at = _now()
    _audit(s, actor, system.id, "link_deleted", {"link_id": link.id})
    return link


# ---------- Comments ----------

def list_comments(s: "Session", system_id: int) -> list[SystemComment]:
    return (
        s.query(SystemComment)
        .filter(SystemComment.system_id == system_id)
        .filter(SystemComment.deleted_at.is_(None))
        .order_by(SystemComment.created_at.desc(), SystemComment.id.desc())
        .all()
    )


def _get_own_comment(s: "Session", system_id: int, comment_id: int, actor: User) -> SystemComment:
    comment = s.get(SystemComment, comment_id)
    if not comment or comment.system_id != system_id or comment.deleted_at is not None:
        raise NotFoundError("Comment", comment_id)
    if comment.user_id != actor.id:
        raise PermissionDeniedError("Only the author can change this comment.")
    return comment


def add_comment(s: "Session", system_id: int, content: Any, actor: User) -> SystemComment:
    system = get_live_system(s, system_id)
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("content is required.", details={"content": "required"})

    comment = SystemComment(system_id=system.id, user_id=actor.id, content=content, created_at=_now())
    s.add(comment)
    s.flush()

    others = [a.user_id for a in active_assignments(s, system.id) if a.user_id != actor.id]
    queue_notifications(
        s,
        system_id=system.id,
        user_ids=others,
        kind=KIND_COMMENT_ADDED,
        message=f"{actor.label} commented on system: {system.title}",
    )
    _audit(s, actor, system.id, "comment_added", {"comment_id": comment.id})
    return comment


def update_comment(s: "Session", system_id: int, comment_id: int, content: Any, actor: User) -> SystemComment:
    system = get_live_system(s, system_id)
    comment = _get_own_comment(s, system.id, comment_id, actor)
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("content is required.", details={"content": "required"})

    comment.content = content
    comment.is_edited = True
    comment.updated_at = _now()
    _audit(s, actor, system.id, "comment_updated", {"comment_id": comment.id})
    return comment


def delete_comment(s: "Session", system_id: int, comment_id: int, actor: User) -> SystemComment:
    system = get_live_system(s, system_id)
    comment = _get_own_comment(s, system.id, comment_id, actor)
    comment.deleted_at = _now()
    _audit(s, actor, system.id, "comment_deleted", {"comment_id": comment.id})
    return comment
