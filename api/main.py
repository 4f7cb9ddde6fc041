# ABOUTME: FastAPI app: auth, goal CRUD, workflow transitions / send-back / edit, feedback and team views.
# ABOUTME: Workflow requests run read-decide-conditional-write with retry; engine errors map to 409/400/500.

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from core.auth import (
    DUMMY_PASSWORD_HASH,
    create_access_token,
    get_current_user,
    hash_password,
    require_roles,
    role_class_of,
    validate_password_length,
    validate_username,
    verify_password,
)
from core.config import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    CORS_ORIGINS,
    DEFAULT_GOALS_PAGE_SIZE,
    MAX_GOALS_PAGE_SIZE,
    WORKFLOW_MAX_RETRIES,
)
from core.database import (
    Feedback,
    Goal,
    StaleGoalError,
    User,
    get_session,
    save_workflow_result,
)
from core.schemas import (
    GoalCreateRequest,
    GoalEditRequest,
    SendBackRequest,
    TransitionRequest,
    UserUpdateRequest,
)
from core.telemetry import log_decision
from goal_workflow.engine import (
    Action,
    ActorRoleClass,
    FeedbackRecord,
    GoalOrigin,
    GoalSnapshot,
    UserRole,
    apply_edit,
    apply_transition,
    goal_affordances,
    initial_status,
    parse_status,
    send_back,
    status_label,
    waiting_label,
)
from goal_workflow.errors import (
    IllegalTransition,
    MissingFeedback,
    UnknownStatus,
    WorkflowError,
)


class GoalAccessError(Exception):
    """Goal missing (404) or not visible/actionable for the caller (403)."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


auth_router = APIRouter(prefix="/auth", tags=["auth"])
users_router = APIRouter(prefix="/users", tags=["users"])


class SignupRequest(BaseModel):
    username: str
    password: str
    full_name: str = ""
    title: str = ""
    department: str = ""
    manager_id: Optional[UUID] = None


class LoginRequest(BaseModel):
    username: str
    password: str


class SignupResponse(BaseModel):
    id: str
    username: str
    access_token: str
    token_type: str
    expires_in: int


class LoginResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int


def _user_to_json(user: User) -> dict:
    """Public user fields; never includes the password hash."""
    return {
        "id": str(user.id),
        "username": user.username,
        "full_name": user.full_name,
        "title": user.title,
        "department": user.department,
        "role": user.role,
        "manager_id": str(user.manager_id) if user.manager_id else None,
    }


@auth_router.post("/signup", status_code=201, response_model=SignupResponse)
def post_signup(req: SignupRequest):
    """Create a new employee account and return an access token so the client can skip calling login."""
    try:
        validate_username(req.username)
        validate_password_length(req.password)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"message": str(e)})
    username_clean = req.username.strip()
    try:
        with get_session() as session:
            if req.manager_id is not None and session.get(User, req.manager_id) is None:
                return JSONResponse(status_code=400, content={"message": "Manager not found."})
            user = User(
                username=username_clean,
                password_hash=hash_password(req.password),
                full_name=req.full_name.strip(),
                title=req.title.strip(),
                department=req.department.strip(),
                role=UserRole.EMPLOYEE.value,
                manager_id=req.manager_id,
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            access_token = create_access_token(user.id)
            return SignupResponse(
                id=str(user.id),
                username=user.username,
                access_token=access_token,
                token_type="bearer",
                expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            )
    except IntegrityError:
        return JSONResponse(
            status_code=409,
            content={"message": "Username already taken."},
        )
    except SQLAlchemyError:
        logging.exception("post_signup failed (database error)")
        return JSONResponse(
            status_code=500,
            content={"message": "Could not create account."},
        )


@auth_router.post("/login", response_model=LoginResponse)
def post_login(req: LoginRequest):
    """Authenticate and return a JWT. Uses constant-time password check to avoid username enumeration."""
    with get_session() as session:
        stmt = select(User).where(User.username == req.username.strip())
        user = session.exec(stmt).first()
    password_hash = user.password_hash if user else DUMMY_PASSWORD_HASH
    if not verify_password(req.password, password_hash) or user is None:
        return JSONResponse(
            status_code=401,
            content={"message": "Invalid username or password."},
        )
    access_token = create_access_token(user.id)
    return LoginResponse(
        access_token=access_token,
        token_type="bearer",
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@users_router.get("/me")
def get_me(current_user: User = Depends(get_current_user)):
    return _user_to_json(current_user)


@users_router.patch("/{user_id}")
def patch_user(
    user_id: UUID,
    req: UserUpdateRequest,
    _admin: User = Depends(require_roles(UserRole.ADMIN)),
):
    """Admin only: change a user's role and/or reporting manager."""
    try:
        with get_session() as session:
            user = session.get(User, user_id)
            if user is None:
                return JSONResponse(status_code=404, content={"message": "User not found."})
            if req.role is not None:
                user.role = req.role.value
            if "manager_id" in req.model_fields_set:
                if req.manager_id == user.id:
                    return JSONResponse(
                        status_code=400,
                        content={"message": "A user cannot be their own manager."},
                    )
                if req.manager_id is not None and session.get(User, req.manager_id) is None:
                    return JSONResponse(status_code=400, content={"message": "Manager not found."})
                user.manager_id = req.manager_id
            session.add(user)
            session.commit()
            session.refresh(user)
            return _user_to_json(user)
    except SQLAlchemyError:
        logging.exception("patch_user failed (database error)")
        return JSONResponse(status_code=500, content={"message": "Could not update user."})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _goal_to_json(goal: Goal, role_class: Optional[ActorRoleClass] = None) -> dict:
    """Serialize a Goal row; with role_class, include the actions that actor may take."""
    snapshot = goal.to_snapshot()
    data = {
        "id": str(goal.id),
        "user_id": str(goal.user_id),
        "title": goal.title,
        "description": goal.description,
        "category": goal.category,
        "origin": snapshot.origin.value,
        "start_date": _iso(goal.start_date),
        "target_date": _iso(goal.target_date),
        "status": snapshot.status.value,
        "status_label": status_label(snapshot.status),
        "progress": goal.progress,
        "manager_id": str(goal.manager_id) if goal.manager_id else None,
        "comments": goal.comment_list(),
        "created_at": goal.created_at.isoformat(),
        "updated_at": goal.updated_at.isoformat(),
    }
    if role_class is not None:
        data["actions"] = [a.to_dict() for a in goal_affordances(snapshot.status, role_class)]
        data["waiting_label"] = waiting_label(snapshot.status, role_class)
    return data


def _feedback_to_json(feedback: Feedback) -> dict:
    return {
        "id": str(feedback.id),
        "goal_id": str(feedback.goal_id),
        "user_id": str(feedback.user_id) if feedback.user_id else None,
        "content": feedback.content,
        "source": feedback.source,
        "feedback_goal_status": feedback.feedback_goal_status,
        "created_at": feedback.created_at.isoformat(),
    }


def _is_manager_of(session: Session, user: User, owner_id: UUID) -> bool:
    owner = session.get(User, owner_id)
    return owner is not None and owner.manager_id == user.id


def _can_act(session: Session, goal: Goal, user: User) -> bool:
    """Owner, the owner's manager and admins may move a goal through the workflow."""
    if goal.user_id == user.id or user.role == UserRole.ADMIN.value:
        return True
    return _is_manager_of(session, user, goal.user_id)


def _can_view(session: Session, goal: Goal, user: User) -> bool:
    if user.role == UserRole.HR.value:
        return True
    return _can_act(session, goal, user)


def _load_goal(session: Session, goal_id: UUID, user: User, act: bool = False) -> Goal:
    goal = session.get(Goal, goal_id)
    if goal is None:
        raise GoalAccessError(404, "Goal not found.")
    allowed = _can_act(session, goal, user) if act else _can_view(session, goal, user)
    if not allowed:
        raise GoalAccessError(403, "You do not have access to this goal.")
    return goal


@dataclass
class _Decision:
    goal: GoalSnapshot
    feedback: Optional[FeedbackRecord] = None
    comments: Optional[list[dict]] = None


def _run_workflow(
    goal_id: UUID,
    user: User,
    action: str,
    decide: Callable[[Goal, GoalSnapshot, ActorRoleClass], _Decision],
) -> tuple[dict, Optional[dict]]:
    """Read the goal, let the engine decide, write conditionally on the status/version read.
    On a concurrent change, re-read and decide again; give up after WORKFLOW_MAX_RETRIES."""
    role = role_class_of(user)
    from_status: Optional[str] = None
    for attempt in range(1, WORKFLOW_MAX_RETRIES + 1):
        with get_session() as session:
            row = _load_goal(session, goal_id, user, act=True)
            expected_status, expected_version = row.status, row.version
            from_status = expected_status
            try:
                decision = decide(row, row.to_snapshot(), role)
            except WorkflowError as e:
                log_decision(
                    goal_id=goal_id,
                    action=action,
                    role_class=role.value,
                    from_status=from_status,
                    to_status=None,
                    progress=None,
                    success=False,
                    error=type(e).__name__,
                    attempts=attempt,
                )
                raise
            try:
                saved, feedback_row = save_workflow_result(
                    session,
                    goal_id,
                    expected_status,
                    expected_version,
                    decision.goal,
                    feedback=decision.feedback,
                    author_id=user.id,
                    comments=decision.comments,
                )
            except StaleGoalError:
                logging.info("goal %s changed concurrently (attempt %d); retrying", goal_id, attempt)
                continue
            log_decision(
                goal_id=goal_id,
                action=action,
                role_class=role.value,
                from_status=from_status,
                to_status=saved.status,
                progress=saved.progress,
                success=True,
                attempts=attempt,
            )
            feedback_json = _feedback_to_json(feedback_row) if feedback_row else None
            return _goal_to_json(saved, role), feedback_json
    log_decision(
        goal_id=goal_id,
        action=action,
        role_class=role.value,
        from_status=from_status,
        to_status=None,
        progress=None,
        success=False,
        error=StaleGoalError.__name__,
        attempts=WORKFLOW_MAX_RETRIES,
    )
    raise StaleGoalError(goal_id)


app = FastAPI(title="Career Goal Workflow API")
app.include_router(auth_router)
app.include_router(users_router)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GoalAccessError)
def _handle_goal_access(_request: Request, exc: GoalAccessError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(IllegalTransition)
def _handle_illegal_transition(_request: Request, exc: IllegalTransition):
    return JSONResponse(
        status_code=409,
        content={
            "message": str(exc),
            "status": exc.status,
            "action": exc.action,
            "role_class": exc.role_class,
        },
    )


@app.exception_handler(MissingFeedback)
def _handle_missing_feedback(_request: Request, exc: MissingFeedback):
    return JSONResponse(status_code=400, content={"message": str(exc)})


@app.exception_handler(UnknownStatus)
def _handle_unknown_status(_request: Request, exc: UnknownStatus):
    logging.exception(
        "goal has unknown status %r; refusing to continue", exc.value, exc_info=exc
    )
    return JSONResponse(
        status_code=500,
        content={"message": "Goal data is corrupted (unknown status)."},
    )


@app.exception_handler(StaleGoalError)
def _handle_stale_goal(_request: Request, exc: StaleGoalError):
    return JSONResponse(
        status_code=409,
        content={"message": "Goal was changed by someone else. Reload it and try again."},
    )


@app.post("/goals", status_code=201)
def post_goals(req: GoalCreateRequest, current_user: User = Depends(get_current_user)):
    """Create a goal. Self goals start as drafts for the caller; Manager goals are assigned to a reportee
    and wait for confirmation."""
    if not req.title.strip():
        return JSONResponse(status_code=400, content={"message": "Title cannot be empty."})
    owner_id = current_user.id
    manager_id = None
    if req.origin is GoalOrigin.MANAGER:
        if current_user.role not in (UserRole.MANAGER.value, UserRole.ADMIN.value):
            return JSONResponse(
                status_code=403,
                content={"message": "Only managers and admins can assign goals."},
            )
        if req.user_id is None:
            return JSONResponse(
                status_code=400,
                content={"message": "user_id of the reportee is required for Manager goals."},
            )
    elif req.user_id is not None and req.user_id != current_user.id:
        return JSONResponse(
            status_code=400,
            content={"message": "user_id can only be set for Manager goals."},
        )
    try:
        with get_session() as session:
            if req.origin is GoalOrigin.MANAGER:
                reportee = session.get(User, req.user_id)
                if reportee is None or reportee.id == current_user.id:
                    return JSONResponse(status_code=404, content={"message": "Reportee not found."})
                if (
                    reportee.manager_id != current_user.id
                    and current_user.role != UserRole.ADMIN.value
                ):
                    return JSONResponse(
                        status_code=403,
                        content={"message": "You can only assign goals to your reportees."},
                    )
                owner_id = reportee.id
                manager_id = current_user.id
            goal = Goal(
                user_id=owner_id,
                title=req.title.strip(),
                description=req.description,
                category=req.category,
                origin=req.origin.value,
                start_date=req.start_date,
                target_date=req.target_date,
                status=initial_status(req.origin).value,
                progress=req.progress,
                manager_id=manager_id,
            )
            session.add(goal)
            session.commit()
            session.refresh(goal)
            logging.info(
                "goal %s created by %s for %s (origin=%s)",
                goal.id,
                current_user.id,
                owner_id,
                goal.origin,
            )
            return _goal_to_json(goal, role_class_of(current_user))
    except SQLAlchemyError:
        logging.exception("post_goals failed (database error)")
        return JSONResponse(
            status_code=500,
            content={"message": "Could not save goal."},
        )


@app.get("/goals")
def get_goals(
    limit: int = Query(DEFAULT_GOALS_PAGE_SIZE, ge=0, le=MAX_GOALS_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
):
    """List the caller's goals, newest first, with their available actions. Returns { goals: [...], total: N }."""
    role = role_class_of(current_user)
    try:
        with get_session() as session:
            total_stmt = (
                select(func.count())
                .select_from(Goal)
                .where(Goal.user_id == current_user.id)
            )
            total = session.exec(total_stmt).one()
            stmt = (
                select(Goal)
                .where(Goal.user_id == current_user.id)
                .order_by(Goal.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            goals = list(session.exec(stmt))
            return {"goals": [_goal_to_json(g, role) for g in goals], "total": total}
    except SQLAlchemyError:
        logging.exception("get_goals failed (database error)")
        return JSONResponse(
            status_code=500,
            content={"message": "Could not load goals."},
        )


@app.get("/goals/{goal_id}")
def get_goal(goal_id: UUID, current_user: User = Depends(get_current_user)):
    try:
        with get_session() as session:
            goal = _load_goal(session, goal_id, current_user)
            role = role_class_of(current_user) if _can_act(session, goal, current_user) else None
            return _goal_to_json(goal, role)
    except SQLAlchemyError:
        logging.exception("get_goal failed (database error)")
        return JSONResponse(status_code=500, content={"message": "Could not load goal."})


@app.get("/goals/{goal_id}/actions")
def get_goal_actions(goal_id: UUID, current_user: User = Depends(get_current_user)):
    """Buttons the caller may use on this goal. Viewers who cannot act get an empty list."""
    role = role_class_of(current_user)
    try:
        with get_session() as session:
            goal = _load_goal(session, goal_id, current_user)
            current = parse_status(goal.status)
            actions = []
            if _can_act(session, goal, current_user):
                actions = [a.to_dict() for a in goal_affordances(current, role)]
            return {
                "goal_id": str(goal.id),
                "status": current.value,
                "status_label": status_label(current),
                "role_class": role.value,
                "actions": actions,
                "waiting_label": waiting_label(current, role),
            }
    except SQLAlchemyError:
        logging.exception("get_goal_actions failed (database error)")
        return JSONResponse(status_code=500, content={"message": "Could not load goal actions."})


@app.post("/goals/{goal_id}/transitions")
def post_goal_transition(
    goal_id: UUID,
    req: TransitionRequest,
    current_user: User = Depends(get_current_user),
):
    """Apply a status-changing action. 409 when the action is not legal for the goal's current status."""

    def _decide(_row: Goal, snapshot: GoalSnapshot, role: ActorRoleClass) -> _Decision:
        return _Decision(goal=apply_transition(snapshot, req.action, role, progress=req.progress))

    try:
        goal_json, _ = _run_workflow(goal_id, current_user, req.action.value, _decide)
        return goal_json
    except SQLAlchemyError:
        logging.exception("post_goal_transition failed (database error)")
        return JSONResponse(status_code=500, content={"message": "Could not update goal."})


@app.post("/goals/{goal_id}/send-back", status_code=201)
def post_goal_send_back(
    goal_id: UUID,
    req: SendBackRequest,
    current_user: User = Depends(get_current_user),
):
    """Return a goal to the employee with feedback. Goal status and feedback are saved together."""

    def _decide(_row: Goal, snapshot: GoalSnapshot, role: ActorRoleClass) -> _Decision:
        result = send_back(snapshot, req.content, role)
        return _Decision(goal=result.goal, feedback=result.feedback)

    try:
        goal_json, feedback_json = _run_workflow(
            goal_id, current_user, Action.SEND_BACK.value, _decide
        )
        return {"goal": goal_json, "feedback": feedback_json}
    except SQLAlchemyError:
        logging.exception("post_goal_send_back failed (database error)")
        return JSONResponse(status_code=500, content={"message": "Could not send goal back."})


@app.patch("/goals/{goal_id}")
def patch_goal(
    goal_id: UUID,
    req: GoalEditRequest,
    current_user: User = Depends(get_current_user),
):
    """Edit progress (and optionally add a comment) without changing status."""

    def _decide(row: Goal, snapshot: GoalSnapshot, role: ActorRoleClass) -> _Decision:
        edited = apply_edit(snapshot, role, req.progress)
        comments = None
        text = (req.comment or "").strip()
        if text:
            comments = row.comment_list() + [
                {"text": text, "timestamp": datetime.now(timezone.utc).isoformat()}
            ]
        return _Decision(goal=edited, comments=comments)

    try:
        goal_json, _ = _run_workflow(goal_id, current_user, Action.EDIT.value, _decide)
        return goal_json
    except SQLAlchemyError:
        logging.exception("patch_goal failed (database error)")
        return JSONResponse(status_code=500, content={"message": "Could not update goal."})


@app.get("/goals/{goal_id}/feedbacks")
def get_goal_feedbacks(goal_id: UUID, current_user: User = Depends(get_current_user)):
    """Feedback thread for a goal, newest first."""
    try:
        with get_session() as session:
            _load_goal(session, goal_id, current_user)
            stmt = (
                select(Feedback)
                .where(Feedback.goal_id == goal_id)
                .order_by(Feedback.created_at.desc())
            )
            return {"feedbacks": [_feedback_to_json(f) for f in session.exec(stmt)]}
    except SQLAlchemyError:
        logging.exception("get_goal_feedbacks failed (database error)")
        return JSONResponse(status_code=500, content={"message": "Could not load feedback."})


_team_lead = require_roles(UserRole.MANAGER, UserRole.ADMIN)


@app.get("/reportees")
def get_reportees(current_user: User = Depends(_team_lead)):
    try:
        with get_session() as session:
            stmt = select(User).where(User.manager_id == current_user.id).order_by(User.username)
            return {"reportees": [_user_to_json(u) for u in session.exec(stmt)]}
    except SQLAlchemyError:
        logging.exception("get_reportees failed (database error)")
        return JSONResponse(status_code=500, content={"message": "Could not load reportees."})


@app.get("/reportees/goals")
def get_reportee_goals(current_user: User = Depends(_team_lead)):
    """Goals of the caller's reportees, grouped per reportee with per-status counts."""
    role = role_class_of(current_user)
    try:
        with get_session() as session:
            reportees = list(
                session.exec(
                    select(User).where(User.manager_id == current_user.id).order_by(User.username)
                )
            )
            result = []
            for reportee in reportees:
                goals = list(
                    session.exec(
                        select(Goal)
                        .where(Goal.user_id == reportee.id)
                        .order_by(Goal.created_at.desc())
                    )
                )
                counts = Counter(parse_status(g.status).value for g in goals)
                result.append(
                    {
                        "user": _user_to_json(reportee),
                        "goals": [_goal_to_json(g, role) for g in goals],
                        "status_counts": dict(counts),
                    }
                )
            return {"reportees": result}
    except SQLAlchemyError:
        logging.exception("get_reportee_goals failed (database error)")
        return JSONResponse(status_code=500, content={"message": "Could not load reportee goals."})
