from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from app.opsdesk.errors import PermissionDeniedError
from app.opsdesk.modules.systems.acknowledgements import (
    ACKNOWLEDGED,
    NEEDS_ACKNOWLEDGEMENT,
    NOT_ASSIGNED,
    STATUSES,
    UPDATE_REQUIRED,
    AcknowledgementPolicy,
    pending_count,
    resolve_for_user,
    resolve_status,
)

T0 = datetime(2026, 3, 1, 9, 0, 0)


def _assignment(user_id=1, deleted=False):
    return SimpleNamespace(user_id=user_id, deleted_at=T0 if deleted else None)


def _ack(version, minutes=0, user_id=1):
    return SimpleNamespace(user_id=user_id, version=version, acknowledged_at=T0 + timedelta(minutes=minutes))


def test_unassigned_user_is_not_assigned_even_with_history():
    assert resolve_status(2, None, [_ack(2)]).status == NOT_ASSIGNED
    assert resolve_status(2, _assignment(deleted=True), [_ack(2)]).status == NOT_ASSIGNED


def test_assigned_without_history_needs_acknowledgement():
    state = resolve_status(1, _assignment(), [])
    assert state.status == NEEDS_ACKNOWLEDGEMENT
    assert state.acknowledged_at is None
    assert state.acknowledged_version is None
    assert state.is_pending


def test_ack_at_current_version_is_acknowledged():
    state = resolve_status(3, _assignment(), [_ack(1), _ack(3, minutes=5)])
    assert state.status == ACKNOWLEDGED
    assert state.acknowledged_version == 3
    assert state.acknowledged_at == T0 + timedelta(minutes=5)
    assert not state.is_pending


def test_latest_current_ack_wins():
    state = resolve_status(2, _assignment(), [_ack(2, minutes=1), _ack(2, minutes=9), _ack(2, minutes=4)])
    assert state.acknowledged_at == T0 + timedelta(minutes=9)


def test_only_stale_acks_require_update():
    state = resolve_status(4, _assignment(), [_ack(1, minutes=30), _ack(3, minutes=1), _ack(2, minutes=60)])
    assert state.status == UPDATE_REQUIRED
    assert state.acknowledged_version == 3
    assert state.acknowledged_at == T0 + timedelta(minutes=1)


def test_ack_above_document_version_counts_as_current():
    assert resolve_status(2, _assignment(), [_ack(5)]).status == ACKNOWLEDGED


def test_requires_acknowledgement_flag_does_not_change_resolution():
    a = _assignment()
    a.requires_acknowledgement = False
    assert resolve_status(1, a, []).status == NEEDS_ACKNOWLEDGEMENT


@pytest.mark.parametrize("assignment", [None, _assignment(), _assignment(deleted=True)])
@pytest.mark.parametrize(
    "history",
    [[], [_ack(1)], [_ack(3)], [_ack(5)], [_ack(1), _ack(3)], [_ack(2), _ack(2)]],
)
def test_resolver_always_returns_a_known_status(assignment, history):
    state = resolve_status(3, assignment, history)
    assert state.status in STATUSES


def test_resolve_for_user_filters_by_user():
    assignments = [_assignment(user_id=1), _assignment(user_id=2)]
    acks = [_ack(2, user_id=1), _ack(1, user_id=2)]
    assert resolve_for_user(2, 1, assignments, acks).status == ACKNOWLEDGED
    assert resolve_for_user(2, 2, assignments, acks).status == UPDATE_REQUIRED
    assert resolve_for_user(2, 3, assignments, acks).status == NOT_ASSIGNED


def test_pending_count_skips_removed_assignments():
    assignments = [_assignment(user_id=1), _assignment(user_id=2), _assignment(user_id=3, deleted=True)]
    acks = [_ack(2, user_id=1)]
    assert pending_count(2, assignments, acks) == 1
    assert pending_count(3, assignments, acks) == 2


def test_policy_is_permissive_by_default():
    AcknowledgementPolicy().check(None)
    AcknowledgementPolicy.from_config({}).check(_assignment(deleted=True))


def test_policy_can_require_active_assignment():
    policy = AcknowledgementPolicy.from_config({"ACK_REQUIRES_ASSIGNMENT": True})
    policy.check(_assignment())
    with pytest.raises(PermissionDeniedError):
        policy.check(None)
    with pytest.raises(PermissionDeniedError):
        policy.check(_assignment(deleted=True))
