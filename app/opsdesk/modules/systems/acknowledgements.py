"""
Per-user acknowledgement status for a system.

Status is derived on read from the user's assignment and their append-only
acknowledgement history; it is never stored.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from app.opsdesk.errors import PermissionDeniedError

ACKNOWLEDGED = "acknowledged"
UPDATE_REQUIRED = "update_required"
NEEDS_ACKNOWLEDGEMENT = "needs_acknowledgement"
NOT_ASSIGNED = "not_assigned"

STATUSES = (ACKNOWLEDGED, UPDATE_REQUIRED, NEEDS_ACKNOWLEDGEMENT, NOT_ASSIGNED)


class AssignmentLike(Protocol):
    user_id: int
    deleted_at: datetime | None


class AcknowledgementLike(Protocol):
    user_id: int
    version: int
    acknowledged_at: datetime


@dataclass(frozen=True)
class AcknowledgementState:
    status: str
    acknowledged_at: datetime | None = None
    acknowledged_version: int | None = None

    @property
    def is_pending(self) -> bool:
        return self.status in (NEEDS_ACKNOWLEDGEMENT, UPDATE_REQUIRED)


def _latest(acks: list[AcknowledgementLike]) -> AcknowledgementLike:
    # Highest version wins; ties go to the most recent acknowledgement.
    return max(acks, key=lambda a: (a.version, a.acknowledged_at or datetime.min))


def resolve_status(
    document_version: int,
    assignment: AssignmentLike | None,
    acknowledgements: Iterable[AcknowledgementLike],
) -> AcknowledgementState:
    """
    Resolve one user's status on one system.

    assignment.requires_acknowledgement is not consulted: every active assignee
    resolves through the same rules, so a flagged-off assignee with no rows is
    still needs_acknowledgement. The flag is stored and serialised only.
    """
    if assignment is None or assignment.deleted_at is not None:
        return AcknowledgementState(NOT_ASSIGNED)

    acks = list(acknowledgements)
    # A version above the document's should not exist; count it as current.
    current = [a for a in acks if a.version >= document_version]
    stale = [a for a in acks if a.version < document_version]

    if current:
        ack = max(current, key=lambda a: a.acknowledged_at or datetime.min)
        return AcknowledgementState(ACKNOWLEDGED, ack.acknowledged_at, ack.version)
    if stale:
        ack = _latest(stale)
        return AcknowledgementState(UPDATE_REQUIRED, ack.acknowledged_at, ack.version)
    return AcknowledgementState(NEEDS_ACKNOWLEDGEMENT)


def resolve_for_user(
    document_version: int,
    user_id: int,
    assignments: Iterable[AssignmentLike],
    acknowledgements: Iterable[AcknowledgementLike],
) -> AcknowledgementState:
    """Pick the user's active assignment and acknowledgement rows out of a system's full sets."""
    assignment = next((a for a in assignments if a.user_id == user_id and a.deleted_at is None), None)
    user_acks = [a for a in acknowledgements if a.user_id == user_id]
    return resolve_status(document_version, assignment, user_acks)


def pending_count(
    document_version: int,
    assignments: Iterable[AssignmentLike],
    acknowledgements: Iterable[AcknowledgementLike],
) -> int:
    acks = list(acknowledgements)
    by_user: dict[int, list[AcknowledgementLike]] = {}
    for a in acks:
        by_user.setdefault(a.user_id, []).append(a)
    count = 0
    for assignment in assignments:
        if assignment.deleted_at is not None:
            continue
        state = resolve_status(document_version, assignment, by_user.get(assignment.user_id, []))
        if state.status != ACKNOWLEDGED:
            count += 1
    return count


@dataclass(frozen=True)
class AcknowledgementPolicy:
    """
    Whether acknowledging requires an active assignment.

    Off by default: any user with systems.acknowledge may acknowledge.
    Set ACK_REQUIRES_ASSIGNMENT=1 to restrict acknowledgement to assignees.
    """

    require_assignment: bool = False

    @classmethod
    def from_config(cls, config) -> "AcknowledgementPolicy":
        return cls(require_assignment=bool(config.get("ACK_REQUIRES_ASSIGNMENT", False)))

    def check(self, assignment: AssignmentLike | None) -> None:
        if not self.require_assignment:
            return
        if assignment is None or assignment.deleted_at is not None:
            raise PermissionDeniedError("You are not assigned to this system.")
