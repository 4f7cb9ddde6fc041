# ABOUTME: FastAPI TestClient tests for auth, goal CRUD, workflow transitions, send-back, edits and team views.
# ABOUTME: Uses an in-memory SQLite engine patched into api.main and core.auth.

import logging
from contextlib import contextmanager
from unittest.mock import patch
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine, select
from sqlmodel.pool import StaticPool

import core.database
from api.main import app
from core.auth import create_access_token, hash_password
from core.database import Feedback, Goal, StaleGoalError, User


@pytest.fixture
def in_memory_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def fake_get_session(in_memory_engine):
    """Context manager that yields a session on the in-memory engine."""

    @contextmanager
    def _fake():
        with Session(in_memory_engine) as s:
            yield s

    return _fake


def _with_fake_session(fake_get_session):
    """Patch get_session in api and auth (where it is imported) so all app code uses the in-memory DB."""

    @contextmanager
    def _both():
        with (
            patch("api.main.get_session", fake_get_session),
            patch("core.auth.get_session", fake_get_session),
        ):
            yield

    return _both()


@pytest.fixture
def client(fake_get_session):
    with _with_fake_session(fake_get_session):
        yield TestClient(app)


@pytest.fixture
def make_user(in_memory_engine):
    """Create a user with the given role (and manager) and return (user_id, auth headers)."""

    def _make(username, role="employee", manager_id=None):
        with Session(in_memory_engine) as session:
            user = User(
                username=username,
                password_hash=hash_password("password123"),
                full_name=username.title(),
                role=role,
                manager_id=manager_id,
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            token = create_access_token(user.id)
            return user.id, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def team(make_user):
    """A manager with one reportee, plus an unrelated employee, an hr user and an admin."""
    manager_id, manager = make_user("grace", role="manager")
    employee_id, employee = make_user("ada", manager_id=manager_id)
    outsider_id, outsider = make_user("linus")
    _, hr = make_user("harriet", role="hr")
    _, admin = make_user("root", role="admin")
    return {
        "manager_id": manager_id,
        "manager": manager,
        "employee_id": employee_id,
        "employee": employee,
        "outsider_id": outsider_id,
        "outsider": outsider,
        "hr": hr,
        "admin": admin,
    }


def _create_goal(client, headers, **overrides):
    body = {
        "title": "Lead the Q3 platform migration",
        "description": "Own planning and rollout.",
        "category": "Experience",
    }
    body.update(overrides)
    resp = client.post("/goals", json=body, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _transition(client, goal_id, headers, action, **extra):
    return client.post(
        f"/goals/{goal_id}/transitions", json={"action": action, **extra}, headers=headers
    )


def _set_status(engine, goal_id, status, progress=None):
    with Session(engine) as session:
        goal = session.get(Goal, UUID(goal_id))
        goal.status = status
        if progress is not None:
            goal.progress = progress
        session.add(goal)
        session.commit()


def test_stored_status_change_is_visible_through_api(client, team, in_memory_engine):
    """Goal ids come back from the API as strings; stored rows are keyed by UUID."""
    goal = _create_goal(client, team["employee"])
    _set_status(in_memory_engine, goal["id"], "reviewed", 90)
    seen = client.get(f"/goals/{goal['id']}", headers=team["manager"]).json()
    assert (seen["status"], seen["progress"]) == ("reviewed", 90)
    assert [a["action"] for a in seen["actions"]] == ["edit", "approve", "send_back", "reject"]


# --- auth ---------------------------------------------------------------


def test_auth_signup_201_creates_employee(client):
    """POST /auth/signup returns 201, id and username; new accounts are always employees."""
    resp = client.post(
        "/auth/signup",
        json={"username": "newuser", "password": "password123", "full_name": "New User"},
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["username"] == "newuser"
    me = client.get("/users/me", headers={"Authorization": f"Bearer {data['access_token']}"})
    assert me.status_code == 200
    assert me.json()["role"] == "employee"
    assert me.json()["full_name"] == "New User"
    assert "password_hash" not in me.json()


def test_auth_signup_409_when_username_taken(client):
    client.post("/auth/signup", json={"username": "taken", "password": "password123"})
    resp = client.post("/auth/signup", json={"username": "taken", "password": "other4567"})
    assert resp.status_code == 409
    assert "already taken" in resp.json().get("message", "").lower()


def test_auth_signup_400_when_password_too_short(client):
    resp = client.post("/auth/signup", json={"username": "u", "password": "short"})
    assert resp.status_code == 400
    assert "password" in resp.json().get("message", "").lower()


def test_auth_signup_400_when_manager_unknown(client):
    resp = client.post(
        "/auth/signup",
        json={
            "username": "orphan",
            "password": "password123",
            "manager_id": "00000000-0000-0000-0000-000000000001",
        },
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Manager not found."


def test_auth_login_200_and_401(client, make_user):
    make_user("logintest")
    ok = client.post("/auth/login", json={"username": "logintest", "password": "password123"})
    assert ok.status_code == 200
    assert ok.json()["token_type"] == "bearer"
    bad = client.post("/auth/login", json={"username": "logintest", "password": "wrong"})
    assert bad.status_code == 401


def test_goals_endpoints_401_without_token(client):
    assert client.get("/goals").status_code == 401
    assert client.post("/goals", json={"title": "x"}).status_code == 401


def test_patch_user_admin_only(client, team):
    resp = client.patch(
        f"/users/{team['outsider_id']}",
        json={"role": "manager"},
        headers=team["manager"],
    )
    assert resp.status_code == 403
    resp = client.patch(
        f"/users/{team['outsider_id']}",
        json={"role": "manager", "manager_id": str(team["manager_id"])},
        headers=team["admin"],
    )
    assert resp.status_code == 200
    assert resp.json()["role"] == "manager"
    assert resp.json()["manager_id"] == str(team["manager_id"])


def test_patch_user_rejects_self_management(client, team):
    resp = client.patch(
        f"/users/{team['outsider_id']}",
        json={"manager_id": str(team["outsider_id"])},
        headers=team["admin"],
    )
    assert resp.status_code == 400


# --- goal creation and listing ------------------------------------------


def test_create_self_goal_starts_as_draft_with_actions(client, team):
    goal = _create_goal(client, team["employee"], progress=5)
    assert goal["status"] == "draft"
    assert goal["status_label"] == "Draft"
    assert goal["origin"] == "Self"
    assert goal["progress"] == 5
    assert goal["manager_id"] is None
    assert [a["action"] for a in goal["actions"]] == ["edit", "submit"]
    assert goal["actions"][1]["resulting_status"] == "pending_confirmed"


def test_create_goal_rejects_blank_title(client, team):
    resp = client.post("/goals", json={"title": "   "}, headers=team["employee"])
    assert resp.status_code == 400


def test_manager_goal_for_reportee_awaits_confirmation(client, team):
    goal = _create_goal(
        client, team["manager"], origin="Manager", user_id=str(team["employee_id"])
    )
    assert goal["status"] == "pending_confirmed"
    assert goal["user_id"] == str(team["employee_id"])
    assert goal["manager_id"] == str(team["manager_id"])

    listed = client.get("/goals", headers=team["employee"]).json()
    assert listed["total"] == 1
    employee_view = listed["goals"][0]
    assert employee_view["actions"] == []
    assert employee_view["waiting_label"] == "Awaiting Confirmation"


def test_employee_cannot_create_manager_goal(client, team):
    resp = client.post(
        "/goals",
        json={"title": "x", "origin": "Manager", "user_id": str(team["outsider_id"])},
        headers=team["employee"],
    )
    assert resp.status_code == 403


def test_manager_cannot_assign_goal_outside_team(client, team):
    resp = client.post(
        "/goals",
        json={"title": "x", "origin": "Manager", "user_id": str(team["outsider_id"])},
        headers=team["manager"],
    )
    assert resp.status_code == 403


def test_self_goal_cannot_target_another_user(client, team):
    resp = client.post(
        "/goals",
        json={"title": "x", "user_id": str(team["outsider_id"])},
        headers=team["employee"],
    )
    assert resp.status_code == 400


def test_get_goals_returns_newest_first_with_pagination(client, team):
    for i in range(3):
        _create_goal(client, team["employee"], title=f"goal{i}")
    data = client.get("/goals", headers=team["employee"]).json()
    assert data["total"] == 3
    assert [g["title"] for g in data["goals"]] == ["goal2", "goal1", "goal0"]

    page = client.get("/goals?limit=2&offset=1", headers=team["employee"]).json()
    assert page["total"] == 3
    assert [g["title"] for g in page["goals"]] == ["goal1", "goal0"]

    assert client.get("/goals?offset=-1", headers=team["employee"]).status_code == 422


def test_goals_scoped_by_user(client, team):
    _create_goal(client, team["employee"], title="Goal A")
    _create_goal(client, team["outsider"], title="Goal B")
    a = client.get("/goals", headers=team["employee"]).json()
    b = client.get("/goals", headers=team["outsider"]).json()
    assert [g["title"] for g in a["goals"]] == ["Goal A"]
    assert [g["title"] for g in b["goals"]] == ["Goal B"]


def test_get_goal_404_and_403(client, team):
    missing = client.get("/goals/00000000-0000-0000-0000-000000000009", headers=team["employee"])
    assert missing.status_code == 404
    goal = _create_goal(client, team["employee"])
    forbidden = client.get(f"/goals/{goal['id']}", headers=team["outsider"])
    assert forbidden.status_code == 403
    assert _transition(client, goal["id"], team["outsider"], "submit").status_code == 403


def test_hr_can_view_but_not_act(client, team):
    goal = _create_goal(client, team["employee"])
    resp = client.get(f"/goals/{goal['id']}/actions", headers=team["hr"])
    assert resp.status_code == 200
    assert resp.json()["role_class"] == "manager_or_admin"
    assert resp.json()["actions"] == []
    assert _transition(client, goal["id"], team["hr"], "submit").status_code == 403


# --- workflow -----------------------------------------------------------


def test_full_lifecycle_with_review_send_back(client, team):
    employee, manager = team["employee"], team["manager"]
    goal = _create_goal(client, employee)
    gid = goal["id"]

    resp = _transition(client, gid, employee, "submit")
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending_confirmed"
    assert resp.json()["progress"] == 0

    resp = _transition(client, gid, employee, "confirm")
    assert resp.status_code == 409
    assert resp.json()["status"] == "pending_confirmed"

    manager_actions = client.get(f"/goals/{gid}/actions", headers=manager).json()["actions"]
    assert [a["action"] for a in manager_actions] == ["edit", "confirm", "send_back", "reject"]

    assert _transition(client, gid, manager, "confirm").json()["status"] == "confirmed"

    started = _transition(client, gid, employee, "start", progress=5).json()
    assert (started["status"], started["progress"]) == ("in_progress", 50)

    sent = _transition(client, gid, employee, "send_for_review").json()
    assert (sent["status"], sent["progress"]) == ("pending_review", 90)

    assert _transition(client, gid, manager, "mark_reviewed").json()["status"] == "reviewed"

    resp = client.post(
        f"/goals/{gid}/send-back", json={"content": "Add the Q3 numbers"}, headers=manager
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["goal"]["status"] == "in_progress"
    assert body["goal"]["progress"] == 90
    assert body["feedback"]["content"] == "Add the Q3 numbers"
    assert body["feedback"]["feedback_goal_status"] == "Goal Review Status"
    assert body["feedback"]["user_id"] == str(team["manager_id"])

    feedbacks = client.get(f"/goals/{gid}/feedbacks", headers=employee).json()["feedbacks"]
    assert [f["content"] for f in feedbacks] == ["Add the Q3 numbers"]

    _transition(client, gid, employee, "send_for_review")
    _transition(client, gid, manager, "mark_reviewed")
    assert _transition(client, gid, manager, "approve").json()["status"] == "approved"
    done = _transition(client, gid, manager, "mark_complete").json()
    assert (done["status"], done["progress"]) == ("completed", 100)
    assert done["actions"] == []

    assert _transition(client, gid, manager, "reject").status_code == 409


def test_send_back_from_confirmation_returns_goal_to_draft(client, team):
    goal = _create_goal(
        client, team["manager"], origin="Manager", user_id=str(team["employee_id"])
    )
    resp = client.post(
        f"/goals/{goal['id']}/send-back",
        json={"content": "Please add metrics"},
        headers=team["manager"],
    )
    assert resp.status_code == 201
    assert resp.json()["goal"]["status"] == "draft"
    assert resp.json()["feedback"]["feedback_goal_status"] == "Goal Confirmation Status"


def test_send_back_without_feedback_is_400_and_changes_nothing(client, team, in_memory_engine):
    goal = _create_goal(client, team["employee"])
    _set_status(in_memory_engine, goal["id"], "reviewed", 90)

    resp = client.post(
        f"/goals/{goal['id']}/send-back", json={"content": "   "}, headers=team["manager"]
    )
    assert resp.status_code == 400

    with Session(in_memory_engine) as session:
        assert session.get(Goal, UUID(goal["id"])).status == "reviewed"
        assert list(session.exec(select(Feedback))) == []


def test_send_back_by_employee_is_409(client, team, in_memory_engine):
    goal = _create_goal(client, team["employee"])
    _set_status(in_memory_engine, goal["id"], "reviewed")
    resp = client.post(
        f"/goals/{goal['id']}/send-back", json={"content": "self critique"}, headers=team["employee"]
    )
    assert resp.status_code == 409


def test_send_back_via_transition_endpoint_requires_feedback(client, team, in_memory_engine):
    goal = _create_goal(client, team["employee"])
    _set_status(in_memory_engine, goal["id"], "reviewed")
    assert _transition(client, goal["id"], team["manager"], "send_back").status_code == 400


@pytest.mark.parametrize("action", ["approve", "mark_complete", "reject", "start", "edit"])
def test_employee_has_no_transition_on_approved_goal(client, team, in_memory_engine, action):
    goal = _create_goal(client, team["employee"])
    _set_status(in_memory_engine, goal["id"], "approved")
    assert _transition(client, goal["id"], team["employee"], action).status_code == 409


def test_unknown_action_is_422(client, team):
    goal = _create_goal(client, team["employee"])
    assert _transition(client, goal["id"], team["employee"], "teleport").status_code == 422


def test_legacy_review_status_is_treated_as_pending_review(client, team, in_memory_engine):
    goal = _create_goal(client, team["employee"])
    _set_status(in_memory_engine, goal["id"], "review", 90)

    seen = client.get(f"/goals/{goal['id']}", headers=team["employee"]).json()
    assert seen["status"] == "pending_review"
    assert seen["waiting_label"] == "Awaiting Review"

    resp = _transition(client, goal["id"], team["manager"], "mark_reviewed")
    assert resp.status_code == 200
    assert resp.json()["status"] == "reviewed"


def test_unknown_persisted_status_is_500(client, team, in_memory_engine):
    goal = _create_goal(client, team["employee"])
    _set_status(in_memory_engine, goal["id"], "on_hold")
    assert client.get(f"/goals/{goal['id']}", headers=team["employee"]).status_code == 500
    resp = _transition(client, goal["id"], team["employee"], "submit")
    assert resp.status_code == 500
    assert "unknown status" in resp.json()["message"]


def test_unknown_persisted_status_is_logged_with_traceback(client, team, in_memory_engine, caplog):
    goal = _create_goal(client, team["employee"])
    _set_status(in_memory_engine, goal["id"], "on_hold")
    with caplog.at_level(logging.ERROR):
        client.get(f"/goals/{goal['id']}", headers=team["employee"])
    records = [r for r in caplog.records if "unknown status" in r.getMessage()]
    assert records
    assert records[0].exc_info is not None
    assert "on_hold" in records[0].getMessage()


@pytest.mark.parametrize(
    "path, headers_key",
    [
        ("/goals/{id}", "employee"),
        ("/goals/{id}/actions", "employee"),
        ("/goals/{id}/feedbacks", "employee"),
        ("/reportees", "manager"),
        ("/reportees/goals", "manager"),
    ],
)
def test_read_endpoints_return_500_on_database_error(client, team, path, headers_key):
    goal = _create_goal(client, team["employee"])

    @contextmanager
    def _broken_session():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        yield

    with patch("api.main.get_session", _broken_session):
        resp = client.get(path.format(id=goal["id"]), headers=team[headers_key])
    assert resp.status_code == 500
    assert resp.json()["message"].startswith("Could not load")


def test_concurrent_change_is_retried_then_applied(client, team):
    goal = _create_goal(client, team["employee"])
    real_save = core.database.save_workflow_result
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StaleGoalError(args[1])
        return real_save(*args, **kwargs)

    with patch("api.main.save_workflow_result", side_effect=flaky):
        resp = _transition(client, goal["id"], team["employee"], "submit")
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending_confirmed"
    assert calls["n"] == 2


def test_persistent_conflict_is_409(client, team):
    goal = _create_goal(client, team["employee"])
    with patch("api.main.save_workflow_result", side_effect=StaleGoalError(goal["id"])):
        resp = _transition(client, goal["id"], team["employee"], "submit")
    assert resp.status_code == 409
    assert "reload" in resp.json()["message"].lower()


def test_edit_updates_progress_and_appends_comment(client, team):
    goal = _create_goal(client, team["employee"])
    resp = client.patch(
        f"/goals/{goal['id']}",
        json={"progress": 30, "comment": "Drafted the rollout plan"},
        headers=team["employee"],
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "draft"
    assert data["progress"] == 30
    assert [c["text"] for c in data["comments"]] == ["Drafted the rollout plan"]

    again = client.patch(
        f"/goals/{goal['id']}", json={"progress": 35}, headers=team["employee"]
    ).json()
    assert again["progress"] == 35
    assert len(again["comments"]) == 1


def test_employee_cannot_edit_while_pending_confirmation(client, team):
    goal = _create_goal(
        client, team["manager"], origin="Manager", user_id=str(team["employee_id"])
    )
    resp = client.patch(f"/goals/{goal['id']}", json={"progress": 10}, headers=team["employee"])
    assert resp.status_code == 409
    ok = client.patch(f"/goals/{goal['id']}", json={"progress": 10}, headers=team["manager"])
    assert ok.status_code == 200


def test_edit_progress_out_of_range_is_422(client, team):
    goal = _create_goal(client, team["employee"])
    resp = client.patch(f"/goals/{goal['id']}", json={"progress": 120}, headers=team["employee"])
    assert resp.status_code == 422


# --- team views ---------------------------------------------------------


def test_reportees_and_their_goals(client, team, in_memory_engine):
    first = _create_goal(client, team["employee"], title="First")
    _create_goal(client, team["employee"], title="Second")
    _set_status(in_memory_engine, first["id"], "review")

    reportees = client.get("/reportees", headers=team["manager"]).json()["reportees"]
    assert [r["username"] for r in reportees] == ["ada"]

    data = client.get("/reportees/goals", headers=team["manager"]).json()["reportees"]
    assert len(data) == 1
    assert data[0]["status_counts"] == {"draft": 1, "pending_review": 1}
    actions = {g["title"]: [a["action"] for a in g["actions"]] for g in data[0]["goals"]}
    assert actions["First"] == ["edit", "mark_reviewed"]
    assert actions["Second"] == ["edit", "submit"]


def test_reportees_forbidden_for_employees(client, team):
    assert client.get("/reportees", headers=team["employee"]).status_code == 403
    assert client.get("/reportees/goals", headers=team["hr"]).status_code == 403
