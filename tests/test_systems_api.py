import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.opsdesk import create_app
from app.opsdesk import auth as auth_module
from app.opsdesk.constants import SYSTEM_PERMISSIONS
from app.opsdesk.db import session_scope
from app.opsdesk.errors import ConflictError
from app.opsdesk.models import AuditEvent, Base, Permission, Role, User
from app.opsdesk.modules.notifications.models import SystemNotification
from app.opsdesk.modules.systems import service
from app.opsdesk.modules.systems.models import System, SystemAcknowledgement

MEMBER_PERMS = ("systems.view", "systems.acknowledge", "systems.comment")


def _make_app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    auth_module._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=name) for key, name in SYSTEM_PERMISSIONS.items()}
        admin_role = Role(key="admin", name="Administrator")
        admin_role.permissions.extend(perms.values())
        member_role = Role(key="member", name="Member")
        member_role.permissions.extend(perms[k] for k in MEMBER_PERMS)
        s.add_all(list(perms.values()) + [admin_role, member_role])

        admin = User(email="admin@example.com", display_name="Admin", password_hash=generate_password_hash("pw"), is_active=True)
        admin.roles.append(admin_role)
        s.add(admin)
        for email in ("alice@example.com", "bob@example.com", "carol@example.com"):
            u = User(email=email, password_hash=generate_password_hash("pw"), is_active=True)
            u.roles.append(member_role)
            s.add(u)
    return app


@pytest.fixture()
def client(tmp_path, monkeypatch):
    return _make_app(tmp_path, monkeypatch).test_client()


def _login(client, email):
    r = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return {"X-CSRF-Token": r.json["csrfToken"]}


def _uid(client, email):
    with session_scope(client.application) as s:
        return s.query(User).filter(User.email == email).one().id


def _create(client, h, **fields):
    body = {"title": "Onboarding SOP", "category": "HR", "status": "Start"}
    body.update(fields)
    r = client.post("/api/systems", json=body, headers=h)
    assert r.status_code == 201, r.json
    return r.json


def _statuses(client, system_id):
    r = client.get(f"/api/systems/{system_id}")
    assert r.status_code == 200
    return {a["userId"]: a for a in r.json["assignments"]}


def test_onboarding_scenario_versions_audits_and_notifies(client):
    alice, bob = _uid(client, "alice@example.com"), _uid(client, "bob@example.com")

    h = _login(client, "admin@example.com")
    doc = _create(client, h, assignedUserIds=[alice])
    sid = doc["id"]
    assert doc["version"] == 1
    assert doc["assignments"][0]["status"] == "needs_acknowledgement"

    h = _login(client, "alice@example.com")
    r = client.post(f"/api/systems/{sid}/acknowledge", json={"notes": "read it"}, headers=h)
    assert r.status_code == 201
    assert r.json["version"] == 1
    assert _statuses(client, sid)[alice]["status"] == "acknowledged"
    assert _statuses(client, sid)[alice]["acknowledgedVersion"] == 1

    # Edit A: category only
    h = _login(client, "admin@example.com")
    r = client.put(f"/api/systems/{sid}", json={"category": "People Ops"}, headers=h)
    assert r.status_code == 200
    assert r.json["version"] == 1
    assert r.json["substantiveChange"] is False
    assert r.json["notifiedUserIds"] == []

    audit = client.get(f"/api/systems/{sid}/audit").json
    assert audit[0]["action"] == "updated_minor"
    assert audit[0]["details"]["changes"] == {"category": "People Ops"}

    r = client.post(f"/api/systems/{sid}/assignments", json={"userIds": [bob]}, headers=h)
    assert r.status_code == 201

    # Edit B: title
    r = client.put(f"/api/systems/{sid}", json={"title": "New Onboarding SOP"}, headers=h)
    assert r.status_code == 200
    assert r.json["version"] == 2
    assert r.json["previousVersion"] == 1
    assert r.json["substantiveChange"] is True
    assert sorted(r.json["notifiedUserIds"]) == sorted([alice, bob])

    audit = client.get(f"/api/systems/{sid}/audit").json
    assert audit[0]["action"] == "updated_substantive"
    assert audit[0]["details"]["old_version"] == 1
    assert audit[0]["details"]["new_version"] == 2
    assert audit[0]["details"]["changed_fields"] == ["title"]
    assert audit[0]["userEmail"] == "admin@example.com"
    assert audit[-1]["action"] == "created"

    statuses = _statuses(client, sid)
    assert statuses[alice]["status"] == "update_required"
    assert statuses[alice]["acknowledgedVersion"] == 1
    assert statuses[bob]["status"] == "needs_acknowledgement"

    with session_scope(client.application) as s:
        # stale-after-bump never writes acknowledgement rows
        assert s.query(SystemAcknowledgement).filter(SystemAcknowledgement.system_id == sid).count() == 1
        updated = (
            s.query(SystemNotification)
            .filter(SystemNotification.system_id == sid, SystemNotification.type == "updated")
            .all()
        )
        assert sorted(n.user_id for n in updated) == sorted([alice, bob])

    h = _login(client, "alice@example.com")
    r = client.post(f"/api/systems/{sid}/acknowledge", json={}, headers=h)
    assert r.status_code == 201
    assert r.json["version"] == 2
    assert _statuses(client, sid)[alice]["status"] == "acknowledged"


def test_draft_promotion_and_description_edits(client):
    h = _login(client, "admin@example.com")
    doc = _create(client, h, status=None, description=None)
    sid = doc["id"]
    assert doc["status"] == "Draft"

    def put(body):
        r = client.put(f"/api/systems/{sid}", json=body, headers=h)
        assert r.status_code == 200, r.json
        return r.json["version"]

    assert put({"status": "Draft"}) == 1
    assert put({"status": "Start"}) == 2
    assert put({"status": "Approve"}) == 2
    assert put({"status": "Draft"}) == 2
    assert put({"description": ""}) == 2
    assert put({"description": "Step 1"}) == 3
    assert put({"description": "Step 1"}) == 3
    assert put({"description": None}) == 4


def test_edit_validation_and_not_found(client):
    h = _login(client, "admin@example.com")
    sid = _create(client, h)["id"]

    r = client.put(f"/api/systems/{sid}", json={"status": "Published"}, headers=h)
    assert r.status_code == 400
    assert "status" in r.json["details"]

    r = client.put(f"/api/systems/{sid}", json={"title": ""}, headers=h)
    assert r.status_code == 400

    r = client.get("/api/systems/9999")
    assert r.status_code == 404
    assert r.json == {"error": "System not found"}

    r = client.put("/api/systems/9999", json={"title": "x"}, headers=h)
    assert r.status_code == 404

    assert client.get(f"/api/systems/{sid}").json["version"] == 1


def test_create_validation(client):
    h = _login(client, "admin@example.com")
    r = client.post("/api/systems", json={}, headers=h)
    assert r.status_code == 400
    assert r.json["details"] == {"title": "required", "category": "required"}

    r = client.post("/api/systems", json={"title": "T", "category": "C", "assignedUserIds": [9999]}, headers=h)
    assert r.status_code == 400
    assert r.json["details"] == {"assignedUserIds": [9999]}

    r = client.post("/api/systems", json={"title": "T", "category": "C", "links": [{"title": "x"}]}, headers=h)
    assert r.status_code == 400

    with session_scope(client.application) as s:
        assert s.query(System).count() == 0


def test_stale_expected_version_is_a_conflict(client):
    h = _login(client, "admin@example.com")
    sid = _create(client, h)["id"]
    client.put(f"/api/systems/{sid}", json={"title": "Second"}, headers=h)

    r = client.put(f"/api/systems/{sid}", json={"title": "Third", "expectedVersion": 1}, headers=h)
    assert r.status_code == 409
    assert r.json["details"] == {"expectedVersion": 1, "currentVersion": 2}

    r = client.put(f"/api/systems/{sid}", json={"title": "Third", "expectedVersion": 2}, headers=h)
    assert r.status_code == 200
    assert r.json["version"] == 3


def test_members_cannot_create_or_edit(client):
    h = _login(client, "admin@example.com")
    sid = _create(client, h)["id"]

    h = _login(client, "alice@example.com")
    r = client.post("/api/systems", json={"title": "x", "category": "y"}, headers=h)
    assert r.status_code == 403
    assert r.json["details"] == {"missingPermission": "systems.create"}

    r = client.put(f"/api/systems/{sid}", json={"title": "x"}, headers=h)
    assert r.status_code == 403


def test_delete_hides_system_but_keeps_audit(client):
    h = _login(client, "admin@example.com")
    sid = _create(client, h)["id"]

    r = client.delete(f"/api/systems/{sid}", headers=h)
    assert r.status_code == 200
    assert r.json["success"] is True
    assert r.json["deletedAt"]

    assert client.get(f"/api/systems/{sid}").status_code == 404
    assert client.delete(f"/api/systems/{sid}", headers=h).status_code == 404
    assert client.put(f"/api/systems/{sid}", json={"title": "x"}, headers=h).status_code == 404
    assert client.post(f"/api/systems/{sid}/acknowledge", json={}, headers=h).status_code == 404
    assert client.get("/api/systems").json == []

    audit = client.get(f"/api/systems/{sid}/audit")
    assert audit.status_code == 200
    assert [e["action"] for e in audit.json] == ["deleted", "created"]


def test_list_filters_and_viewer_status(client):
    alice = _uid(client, "alice@example.com")
    h = _login(client, "admin@example.com")
    a = _create(client, h, title="Alpha", category="Sales", assignedUserIds=[alice])["id"]
    b = _create(client, h, title="Bravo", category="Finance", description="month-end close")["id"]
    c = _create(client, h, title="Charlie", category="Sales", status="Approve", assignedUserIds=[alice])["id"]

    assert [x["id"] for x in client.get("/api/systems?category=Sales").json] == [a, c]
    assert [x["id"] for x in client.get("/api/systems?status=Approve").json] == [c]
    assert [x["id"] for x in client.get("/api/systems?search=month-end").json] == [b]
    assert [x["id"] for x in client.get("/api/systems?sort=-title").json] == [c, b, a]

    r = client.get("/api/systems?sort=owner")
    assert r.status_code == 400

    rows = {x["id"]: x for x in client.get("/api/systems").json}
    assert rows[a]["assignedUserCount"] == 1
    assert rows[a]["pendingAcknowledgements"] == 1
    assert rows[b]["assignedUserCount"] == 0
    assert rows[a]["userAcknowledgementStatus"] is None

    h = _login(client, "alice@example.com")
    client.post(f"/api/systems/{a}/acknowledge", json={}, headers=h)

    mine = client.get("/api/systems?assigned_to_me=1").json
    assert sorted(x["id"] for x in mine) == sorted([a, c])
    statuses = {x["id"]: x["userAcknowledgementStatus"] for x in mine}
    assert statuses == {a: "acknowledged", c: "needs_acknowledgement"}

    todo = client.get("/api/systems?needs_acknowledgement=true").json
    assert [x["id"] for x in todo] == [c]

    h = _login(client, "admin@example.com")
    client.put(f"/api/systems/{a}", json={"title": "Alpha v2"}, headers=h)

    h = _login(client, "alice@example.com")
    todo = client.get("/api/systems?needs_acknowledgement=1").json
    assert sorted(x["id"] for x in todo) == sorted([a, c])


def test_assignments_add_and_remove(client):
    alice, bob = _uid(client, "alice@example.com"), _uid(client, "bob@example.com")
    h = _login(client, "admin@example.com")
    sid = _create(client, h, assignedUserIds=[alice])["id"]

    r = client.post(f"/api/systems/{sid}/assignments", json={"userIds": [alice, bob]}, headers=h)
    assert r.status_code == 409
    assert r.json["details"] == {"userIds": [alice]}

    r = client.post(f"/api/systems/{sid}/assignments", json={"userIds": []}, headers=h)
    assert r.status_code == 400

    r = client.post(f"/api/systems/{sid}/assignments", json={"userIds": [9999]}, headers=h)
    assert r.status_code == 400

    r = client.post(f"/api/systems/{sid}/assignments", json={"userIds": [bob]}, headers=h)
    assert r.status_code == 201
    assignment_id = r.json["assignments"][0]["id"]

    r = client.delete(f"/api/systems/{sid}/assignments?userId={alice}", headers=h)
    assert r.status_code == 200
    assert r.json["removed"] == 1
    assert client.delete(f"/api/systems/{sid}/assignments?userId={alice}", headers=h).status_code == 404
    assert client.delete(f"/api/systems/{sid}/assignments", headers=h).status_code == 400

    r = client.delete(f"/api/systems/{sid}/assignments?assignmentId={assignment_id}", headers=h)
    assert r.status_code == 200

    assert client.get(f"/api/systems/{sid}").json["assignments"] == []

    # Reassigning after removal is allowed
    r = client.post(f"/api/systems/{sid}/assignments", json={"userIds": [alice]}, headers=h)
    assert r.status_code == 201

    actions = [e["action"] for e in client.get(f"/api/systems/{sid}/audit").json]
    assert actions.count("user_unassigned") == 2
    assert actions.count("users_assigned") == 2


def test_acknowledge_without_assignment_is_allowed_by_default(client):
    h = _login(client, "admin@example.com")
    sid = _create(client, h)["id"]

    h = _login(client, "carol@example.com")
    r = client.post(f"/api/systems/{sid}/acknowledge", json={}, headers=h)
    assert r.status_code == 201

    detail = client.get(f"/api/systems/{sid}").json
    assert detail["assignments"] == []
    assert len(detail["acknowledgements"]) == 1


def test_acknowledge_can_require_assignment(tmp_path, monkeypatch):
    monkeypatch.setenv("ACK_REQUIRES_ASSIGNMENT", "1")
    client = _make_app(tmp_path, monkeypatch).test_client()
    alice = _uid(client, "alice@example.com")

    h = _login(client, "admin@example.com")
    sid = _create(client, h, assignedUserIds=[alice])["id"]

    h = _login(client, "carol@example.com")
    r = client.post(f"/api/systems/{sid}/acknowledge", json={}, headers=h)
    assert r.status_code == 403

    h = _login(client, "alice@example.com")
    r = client.post(f"/api/systems/{sid}/acknowledge", json={}, headers=h)
    assert r.status_code == 201


def test_links_are_ordered_and_editable(client):
    h = _login(client, "admin@example.com")
    doc = _create(client, h, links=[{"title": "Handbook", "url": "https://example.com/hb"}])
    sid = doc["id"]
    assert doc["links"][0]["sortOrder"] == 0

    r = client.post(f"/api/systems/{sid}/links", json={"title": "Form", "url": "https://example.com/f"}, headers=h)
    assert r.status_code == 201
    link_id = r.json["id"]
    assert r.json["sortOrder"] == 1

    r = client.post(f"/api/systems/{sid}/links", json={"title": "Form"}, headers=h)
    assert r.status_code == 400

    r = client.put(f"/api/systems/{sid}/links/{link_id}", json={"title": "Intake form"}, headers=h)
    assert r.status_code == 200
    assert r.json["title"] == "Intake form"
    assert r.json["url"] == "https://example.com/f"

    assert client.delete(f"/api/systems/{sid}/links/{link_id}", headers=h).status_code == 200
    assert client.delete(f"/api/systems/{sid}/links/{link_id}", headers=h).status_code == 404
    assert [link["title"] for link in client.get(f"/api/systems/{sid}").json["links"]] == ["Handbook"]

    # Link edits never touch the version
    assert client.get(f"/api/systems/{sid}").json["version"] == 1


def test_comments_and_notifications(client):
    alice, bob = _uid(client, "alice@example.com"), _uid(client, "bob@example.com")
    h = _login(client, "admin@example.com")
    sid = _create(client, h, assignedUserIds=[alice, bob])["id"]

    h = _login(client, "alice@example.com")
    r = client.post(f"/api/systems/{sid}/comments", json={"content": "Step 3 is unclear"}, headers=h)
    assert r.status_code == 201
    comment_id = r.json["id"]

    r = client.post(f"/api/systems/{sid}/comments", json={"content": "   "}, headers=h)
    assert r.status_code == 400

    r = client.put(f"/api/systems/{sid}/comments/{comment_id}", json={"content": "Step 3 needs a screenshot"}, headers=h)
    assert r.status_code == 200
    assert r.json["isEdited"] is True

    h = _login(client, "bob@example.com")
    r = client.put(f"/api/systems/{sid}/comments/{comment_id}", json={"content": "hijack"}, headers=h)
    assert r.status_code == 403
    assert client.delete(f"/api/systems/{sid}/comments/{comment_id}", headers=h).status_code == 403

    notes = client.get("/api/notifications").json
    assert sorted(n["type"] for n in notes) == ["assigned", "comment_added"]
    unread = client.get("/api/notifications?unread=1").json
    assert len(unread) == 2

    r = client.post(f"/api/notifications/{unread[0]['id']}/read", headers=h)
    assert r.status_code == 200
    assert r.json["readAt"]
    assert len(client.get("/api/notifications?unread=1").json) == 1

    # Alice wrote the comment, so she only has her assignment notice
    h = _login(client, "alice@example.com")
    notes = client.get("/api/notifications").json
    assert [n["type"] for n in notes] == ["assigned"]
    r = client.post(f"/api/notifications/{unread[1]['id']}/read", headers=h)
    assert r.status_code == 404

    assert client.delete(f"/api/systems/{sid}/comments/{comment_id}", headers=h).status_code == 200
    assert client.get(f"/api/systems/{sid}/comments").json == []


def test_concurrent_edit_is_retried_against_fresh_state(tmp_path, monkeypatch):
    app = _make_app(tmp_path, monkeypatch)
    with session_scope(app) as s:
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        sid = service.create_system(s, {"title": "Onboarding SOP", "category": "HR", "status": "Start"}, admin).id

    real_evaluate = service.evaluate_edit
    calls = {"n": 0}

    def racing_evaluate(current, proposed):
        calls["n"] += 1
        if calls["n"] == 1:
            # Another writer bumps the version between our read and our write
            with session_scope(app) as other:
                other.execute(update(System).where(System.id == sid).values(version=System.version + 1))
        return real_evaluate(current, proposed)

    monkeypatch.setattr(service, "evaluate_edit", racing_evaluate)

    with session_scope(app) as s:
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        result = service.apply_edit(s, sid, {"title": "Raced"}, admin, retries=1)

    assert calls["n"] == 2
    assert result.decision.old_version == 2
    assert result.decision.new_version == 3

    with session_scope(app) as s:
        assert s.get(System, sid).version == 3
        ev = (
            s.query(AuditEvent)
            .filter(AuditEvent.entity_id == str(sid), AuditEvent.action == "updated_substantive")
            .one()
        )
        assert '"old_version": 2' in ev.metadata_json


def test_concurrent_edit_gives_up_after_retries(tmp_path, monkeypatch):
    app = _make_app(tmp_path, monkeypatch)
    with session_scope(app) as s:
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        sid = service.create_system(s, {"title": "Onboarding SOP", "category": "HR"}, admin).id

    real_evaluate = service.evaluate_edit

    def racing_evaluate(current, proposed):
        with session_scope(app) as other:
            other.execute(update(System).where(System.id == sid).values(version=System.version + 1))
        return real_evaluate(current, proposed)

    monkeypatch.setattr(service, "evaluate_edit", racing_evaluate)

    with pytest.raises(ConflictError):
        with session_scope(app) as s:
            admin = s.query(User).filter(User.email == "admin@example.com").one()
            service.apply_edit(s, sid, {"title": "Lost"}, admin, retries=0)

    with session_scope(app) as s:
        system = s.get(System, sid)
        assert system.title == "Onboarding SOP"
        assert system.version == 2
        assert s.query(AuditEvent).filter(AuditEvent.entity_id == str(sid)).count() == 1


def test_fractional_ids_and_versions_are_rejected(client):
    alice = _uid(client, "alice@example.com")
    h = _login(client, "admin@example.com")
    sid = _create(client, h)["id"]

    r = client.post(f"/api/systems/{sid}/assignments", json={"userIds": [alice + 0.9]}, headers=h)
    assert r.status_code == 400
    assert r.json["details"] == {"userIds": "invalid"}
    r = client.post(f"/api/systems/{sid}/assignments", json={"userIds": [float(alice)]}, headers=h)
    assert r.status_code == 400
    r = client.post("/api/systems", json={"title": "T", "category": "C", "assignedUserIds": [alice + 0.5]}, headers=h)
    assert r.status_code == 400
    assert client.get(f"/api/systems/{sid}").json["assignments"] == []

    r = client.put(f"/api/systems/{sid}", json={"title": "X", "expectedVersion": 1.7}, headers=h)
    assert r.status_code == 400
    assert r.json["details"] == {"expectedVersion": "invalid"}
    assert client.get(f"/api/systems/{sid}").json["version"] == 1

    r = client.delete(f"/api/systems/{sid}/assignments?userId=1.5", headers=h)
    assert r.status_code == 400

    # Digit strings are still whole numbers
    r = client.post(f"/api/systems/{sid}/assignments", json={"userIds": [str(alice)]}, headers=h)
    assert r.status_code == 201
    assert r.json["assignments"][0]["userId"] == alice
    r = client.put(f"/api/systems/{sid}", json={"title": "X", "expectedVersion": "1"}, headers=h)
    assert r.status_code == 200
    assert r.json["version"] == 2


def _edit_footprint(app, sid):
    with session_scope(app) as s:
        system = s.get(System, sid)
        return (
            system.title,
            system.version,
            s.query(AuditEvent).filter(AuditEvent.entity_type == "System", AuditEvent.entity_id == str(sid)).count(),
            s.query(SystemNotification).filter(SystemNotification.system_id == sid).count(),
        )


def test_database_failure_on_commit_returns_500_and_keeps_nothing(client, monkeypatch):
    alice = _uid(client, "alice@example.com")
    h = _login(client, "admin@example.com")
    sid = _create(client, h, assignedUserIds=[alice])["id"]
    before = _edit_footprint(client.application, sid)
    assert before == ("Onboarding SOP", 1, 1, 1)

    def failing_commit(self):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    with monkeypatch.context() as m:
        m.setattr(Session, "commit", failing_commit)
        r = client.put(f"/api/systems/{sid}", json={"title": "Lost edit"}, headers=h)

    assert r.status_code == 500
    assert r.json == {"error": "Database error"}
    assert _edit_footprint(client.application, sid) == before

    r = client.put(f"/api/systems/{sid}", json={"title": "Saved edit"}, headers=h)
    assert r.status_code == 200
    assert r.json["version"] == 2


def test_notification_write_failure_rolls_back_the_version_bump(client, monkeypatch):
    alice = _uid(client, "alice@example.com")
    h = _login(client, "admin@example.com")
    sid = _create(client, h, assignedUserIds=[alice])["id"]
    before = _edit_footprint(client.application, sid)

    def failing_queue(*args, **kwargs):
        raise OperationalError("INSERT INTO system_notifications", {}, Exception("database is locked"))

    # The conditional UPDATE has already run when the fan-out fails
    monkeypatch.setattr(service, "queue_notifications", failing_queue)
    r = client.put(f"/api/systems/{sid}", json={"title": "New Onboarding SOP"}, headers=h)

    assert r.status_code == 500
    assert r.json == {"error": "Database error"}
    assert _edit_footprint(client.application, sid) == before
