"""
Versioning rules for systems (SOP documents).

An edit is *substantive* when it changes the title, changes the description, or
moves a Draft out of Draft. Substantive edits bump the version by one, which
invalidates every earlier acknowledgement. Everything else (category changes,
moves between non-Draft statuses, no-op saves) is minor and keeps the version.

Pure functions only; persistence lives in service.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.opsdesk.errors import ValidationError

STATUS_DRAFT = "Draft"
VALID_STATUSES = ("Draft", "Start", "Approve", "Need Review")

ACTION_SUBSTANTIVE = "updated_substantive"
ACTION_MINOR = "updated_minor"

# Sentinel for "field absent from the payload" (distinct from an explicit null).
UNSET: Any = object()


@dataclass(frozen=True)
class SystemSnapshot:
    title: str
    category: str
    status: str
    description: str | None
    version: int


@dataclass(frozen=True)
class EditFields:
    title: Any = UNSET
    category: Any = UNSET
    status: Any = UNSET
    description: Any = UNSET

    def provided(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in (
                ("title", self.title),
                ("category", self.category),
                ("status", self.status),
                ("description", self.description),
            )
            if value is not UNSET
        }


@dataclass(frozen=True)
class EditDecision:
    substantive: bool
    old_version: int
    new_version: int
    title: str
    category: str
    status: str
    description: str | None
    changed_fields: tuple[str, ...] = field(default_factory=tuple)

    @property
    def action(self) -> str:
        return ACTION_SUBSTANTIVE if self.substantive else ACTION_MINOR


def snapshot_of(system) -> SystemSnapshot:
    return SystemSnapshot(
        title=system.title,
        category=system.category,
        status=system.status,
        description=system.description,
        version=system.version,
    )


def _normalize_description(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("description must be a string or null.", details={"description": "invalid"})
    return value or None


def parse_edit_payload(payload: dict) -> EditFields:
    """
    Build EditFields from a JSON body. Keys that are absent stay UNSET so the
    stored value is kept. Strings are compared as given (no trimming).
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")

    errors: dict[str, str] = {}
    values: dict[str, Any] = {}

    for name in ("title", "category"):
        if name not in payload:
            continue
        v = payload[name]
        if not isinstance(v, str) or not v.strip():
            errors[name] = "must be a non-empty string"
        else:
            values[name] = v

    if "status" in payload:
        v = payload["status"]
        if v not in VALID_STATUSES:
            errors["status"] = f"must be one of: {', '.join(VALID_STATUSES)}"
        else:
            values["status"] = v

    if "description" in payload:
        try:
            values["description"] = _normalize_description(payload["description"])
        except ValidationError:
            errors["description"] = "must be a string or null"

    if errors:
        raise ValidationError("Invalid system fields.", details=errors)
    return EditFields(**values)


def is_substantive(current: SystemSnapshot, proposed: EditFields) -> bool:
    title = current.title if proposed.title is UNSET else proposed.title
    if title != current.title:
        return True

    description = current.description if proposed.description is UNSET else proposed.description
    if description != current.description:
        return True

    status = current.status if proposed.status is UNSET else proposed.status
    if current.status == STATUS_DRAFT and status != STATUS_DRAFT:
        return True

    return False


def evaluate_edit(current: SystemSnapshot, proposed: EditFields) -> EditDecision:
    """Merge the proposed fields over the current state and decide the new version."""
    provided = proposed.provided()
    merged = {
        "title": provided.get("title", current.title),
        "category": provided.get("category", current.category),
        "status": provided.get("status", current.status),
        "description": provided.get("description", current.description),
    }
    changed = tuple(name for name, value in merged.items() if value != getattr(current, name))

    substantive = is_substantive(current, proposed)
    new_version = current.version + 1 if substantive else current.version
    return EditDecision(
        substantive=substantive,
        old_version=current.version,
        new_version=new_version,
        changed_fields=changed,
        **merged,
    )
