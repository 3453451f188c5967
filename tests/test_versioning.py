import pytest

from app.opsdesk.errors import ValidationError
from app.opsdesk.modules.systems.versioning import (
    ACTION_MINOR,
    ACTION_SUBSTANTIVE,
    UNSET,
    EditFields,
    SystemSnapshot,
    evaluate_edit,
    is_substantive,
    parse_edit_payload,
)


def _snap(**overrides) -> SystemSnapshot:
    base = {
        "title": "Onboarding SOP",
        "category": "HR",
        "status": "Start",
        "description": "Steps for new hires",
        "version": 3,
    }
    base.update(overrides)
    return SystemSnapshot(**base)


def test_category_only_edit_is_minor():
    d = evaluate_edit(_snap(), EditFields(category="People Ops"))
    assert d.substantive is False
    assert d.new_version == d.old_version == 3
    assert d.category == "People Ops"
    assert d.changed_fields == ("category",)
    assert d.action == ACTION_MINOR


def test_title_change_bumps_version_by_one():
    d = evaluate_edit(_snap(), EditFields(title="New Onboarding SOP"))
    assert d.substantive is True
    assert d.old_version == 3
    assert d.new_version == 4
    assert d.action == ACTION_SUBSTANTIVE


def test_description_change_is_substantive():
    assert is_substantive(_snap(), EditFields(description="Revised steps")) is True
    assert is_substantive(_snap(), EditFields(description=None)) is True


def test_same_values_resubmitted_is_minor():
    s = _snap()
    d = evaluate_edit(s, EditFields(title=s.title, category=s.category, status=s.status, description=s.description))
    assert d.substantive is False
    assert d.changed_fields == ()


@pytest.mark.parametrize(
    "current,proposed,expected",
    [
        ("Draft", "Start", True),
        ("Draft", "Approve", True),
        ("Draft", "Need Review", True),
        ("Draft", "Draft", False),
        ("Start", "Approve", False),
        ("Approve", "Need Review", False),
        ("Need Review", "Draft", False),
    ],
)
def test_status_transitions(current, proposed, expected):
    assert is_substantive(_snap(status=current), EditFields(status=proposed)) is expected


def test_repeated_minor_edits_never_move_version():
    snap = _snap(status="Start")
    for category, status in [("Ops", "Approve"), ("Finance", "Need Review"), ("Ops", "Start"), ("Ops", "Approve")]:
        d = evaluate_edit(snap, EditFields(category=category, status=status))
        assert d.new_version == 3
        snap = _snap(category=d.category, status=d.status, version=d.new_version)


def test_version_sequence_is_monotonic_and_steps_by_one():
    edits = [
        EditFields(category="Ops"),
        EditFields(status="Start"),
        EditFields(status="Approve"),
        EditFields(title="SOP v2"),
        EditFields(description="new body"),
        EditFields(description="new body"),
        EditFields(status="Draft"),
        EditFields(status="Start"),
    ]
    snap = _snap(status="Draft", version=1)
    versions = [snap.version]
    for e in edits:
        d = evaluate_edit(snap, e)
        assert d.new_version - snap.version == (1 if d.substantive else 0)
        snap = SystemSnapshot(d.title, d.category, d.status, d.description, d.new_version)
        versions.append(snap.version)

    assert versions == sorted(versions)
    # Draft->Start twice, title, description
    assert versions[-1] == 5


def test_parse_edit_payload_leaves_absent_fields_unset():
    fields = parse_edit_payload({"category": "Ops"})
    assert fields.category == "Ops"
    assert fields.title is UNSET
    assert fields.status is UNSET
    assert fields.description is UNSET
    assert fields.provided() == {"category": "Ops"}


def test_parse_edit_payload_ignores_unknown_keys():
    fields = parse_edit_payload({"title": "T", "expectedVersion": 2, "csrf_token": "x"})
    assert fields.provided() == {"title": "T"}


def test_parse_edit_payload_normalizes_empty_description():
    assert parse_edit_payload({"description": ""}).description is None
    assert is_substantive(_snap(description=None), parse_edit_payload({"description": ""})) is False


def test_parse_edit_payload_rejects_bad_fields():
    with pytest.raises(ValidationError) as exc:
        parse_edit_payload({"title": "  ", "category": 5, "status": "Published", "description": 12})
    assert set(exc.value.details) == {"title", "category", "status", "description"}


def test_parse_edit_payload_requires_object():
    with pytest.raises(ValidationError):
        parse_edit_payload(["title"])
