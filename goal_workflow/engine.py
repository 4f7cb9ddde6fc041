# ABOUTME: Goal lifecycle state machine: statuses, role-gated actions, progress overrides and send-back.
# ABOUTME: Pure functions over GoalSnapshot values; persistence and auth stay in core.database / core.auth.

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from goal_workflow.errors import IllegalTransition, MissingFeedback, UnknownStatus


class GoalStatus(str, Enum):
    """Closed set of goal statuses, in lifecycle order."""

    DRAFT = "draft"
    PENDING_CONFIRMED = "pending_confirmed"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    PENDING_REVIEW = "pending_review"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"


class GoalOrigin(str, Enum):
    """Who proposed the goal."""

    SELF = "Self"
    MANAGER = "Manager"


class UserRole(str, Enum):
    EMPLOYEE = "employee"
    MANAGER = "manager"
    HR = "hr"
    ADMIN = "admin"


class ActorRoleClass(str, Enum):
    """The only role split that affects transition legality."""

    EMPLOYEE = "employee"
    MANAGER_OR_ADMIN = "manager_or_admin"


class Action(str, Enum):
    SUBMIT = "submit"
    CONFIRM = "confirm"
    SEND_BACK = "send_back"
    REJECT = "reject"
    START = "start"
    SEND_FOR_REVIEW = "send_for_review"
    MARK_REVIEWED = "mark_reviewed"
    APPROVE = "approve"
    MARK_COMPLETE = "mark_complete"
    EDIT = "edit"


# Old rows may still carry "review"; it means pending_review everywhere.
LEGACY_STATUS_ALIASES = {"review": GoalStatus.PENDING_REVIEW}
LIFECYCLE_ORDER = tuple(GoalStatus)
TERMINAL_STATUSES = frozenset({GoalStatus.COMPLETED, GoalStatus.REJECTED})

FEEDBACK_SOURCE_MANAGER = "Manager Feedback"
CONFIRMATION_FEEDBACK_STATUS = "Goal Confirmation Status"
REVIEW_FEEDBACK_STATUS = "Goal Review Status"


@dataclass(frozen=True)
class GoalSnapshot:
    """The slice of a goal the engine reads and rewrites."""

    id: Any
    status: GoalStatus
    progress: int = 0
    origin: GoalOrigin = GoalOrigin.SELF
    manager_id: Any = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class FeedbackRecord:
    """Reviewer comment produced by a send-back."""

    goal_id: Any
    content: str
    feedback_goal_status: str
    source: str
    created_at: datetime


@dataclass(frozen=True)
class AvailableAction:
    action: Action
    resulting_status: GoalStatus
    requires_feedback: bool = False
    label: str = ""

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "resulting_status": self.resulting_status.value,
            "requires_feedback": self.requires_feedback,
            "label": self.label,
        }


@dataclass(frozen=True)
class SendBackResult:
    """Reverted goal and its feedback; both must be persisted together or not at all."""

    goal: GoalSnapshot
    feedback: FeedbackRecord


_E = ActorRoleClass.EMPLOYEE
_M = ActorRoleClass.MANAGER_OR_ADMIN

_SUBMIT = AvailableAction(Action.SUBMIT, GoalStatus.PENDING_CONFIRMED, label="Submit")

TRANSITIONS: dict[tuple[GoalStatus, ActorRoleClass], tuple[AvailableAction, ...]] = {
    (GoalStatus.DRAFT, _E): (_SUBMIT,),
    (GoalStatus.DRAFT, _M): (_SUBMIT,),
    (GoalStatus.PENDING_CONFIRMED, _M): (
        AvailableAction(Action.CONFIRM, GoalStatus.CONFIRMED, label="Confirm"),
        AvailableAction(
            Action.SEND_BACK, GoalStatus.DRAFT, requires_feedback=True, label="Send Back"
        ),
        AvailableAction(Action.REJECT, GoalStatus.REJECTED, label="Reject"),
    ),
    (GoalStatus.CONFIRMED, _E): (
        AvailableAction(Action.START, GoalStatus.IN_PROGRESS, label="Start"),
    ),
    (GoalStatus.IN_PROGRESS, _E): (
        AvailableAction(
            Action.SEND_FOR_REVIEW, GoalStatus.PENDING_REVIEW, label="Send for Review"
        ),
    ),
    (GoalStatus.PENDING_REVIEW, _M): (
        AvailableAction(Action.MARK_REVIEWED, GoalStatus.REVIEWED, label="Mark as Reviewed"),
    ),
    (GoalStatus.REVIEWED, _M): (
        AvailableAction(Action.APPROVE, GoalStatus.APPROVED, label="Approve"),
        AvailableAction(
            Action.SEND_BACK, GoalStatus.IN_PROGRESS, requires_feedback=True, label="Send Back"
        ),
        AvailableAction(Action.REJECT, GoalStatus.REJECTED, label="Reject"),
    ),
    (GoalStatus.APPROVED, _M): (
        AvailableAction(Action.MARK_COMPLETE, GoalStatus.COMPLETED, label="Mark Complete"),
    ),
}

PROGRESS_OVERRIDES: dict[Action, int] = {
    Action.START: 50,
    Action.SEND_FOR_REVIEW: 90,
    Action.MARK_COMPLETE: 100,
}

SEND_BACK_FEEDBACK_STATUS = {
    GoalStatus.PENDING_CONFIRMED: CONFIRMATION_FEEDBACK_STATUS,
    GoalStatus.REVIEWED: REVIEW_FEEDBACK_STATUS,
}

_MANAGER_REVIEW_EDIT_STATUSES = frozenset({GoalStatus.CONFIRMED, GoalStatus.IN_PROGRESS})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_status(raw: GoalStatus | str) -> GoalStatus:
    """Return the GoalStatus for a stored value, mapping legacy aliases. Raise UnknownStatus otherwise."""
    if isinstance(raw, GoalStatus):
        return raw
    if not isinstance(raw, str):
        raise UnknownStatus(raw)
    if raw in LEGACY_STATUS_ALIASES:
        return LEGACY_STATUS_ALIASES[raw]
    try:
        return GoalStatus(raw)
    except ValueError:
        raise UnknownStatus(raw) from None


def role_class_for(role: ActorRoleClass | UserRole | str) -> ActorRoleClass:
    """Collapse a user role (or an already-resolved role class) into the engine's two-way split.
    Raise ValueError for unknown roles."""
    if isinstance(role, ActorRoleClass):
        return role
    if role == ActorRoleClass.MANAGER_OR_ADMIN.value:
        return ActorRoleClass.MANAGER_OR_ADMIN
    user_role = UserRole(role)
    if user_role is UserRole.EMPLOYEE:
        return ActorRoleClass.EMPLOYEE
    return ActorRoleClass.MANAGER_OR_ADMIN


def initial_status(origin: GoalOrigin | str) -> GoalStatus:
    """Self-authored goals start as drafts; manager-authored goals wait for confirmation."""
    if GoalOrigin(origin) is GoalOrigin.MANAGER:
        return GoalStatus.PENDING_CONFIRMED
    return GoalStatus.DRAFT


def is_terminal(status: GoalStatus | str) -> bool:
    return parse_status(status) in TERMINAL_STATUSES


def status_label(status: GoalStatus | str) -> str:
    """Human label for a status badge, e.g. 'pending_review' (or legacy 'review') -> 'Pending Review'."""
    return parse_status(status).value.replace("_", " ").title()


def progress_for(action: Action | str) -> Optional[int]:
    """Fixed progress forced by an action, or None when the action leaves progress alone."""
    return PROGRESS_OVERRIDES.get(Action(action))


def available_actions(status: GoalStatus | str, role_class: ActorRoleClass | str) -> list[AvailableAction]:
    """Ordered status-changing actions legal for this status and actor role class."""
    key = (parse_status(status), role_class_for(role_class))
    return list(TRANSITIONS.get(key, ()))


def edit_allowed(status: GoalStatus | str, role_class: ActorRoleClass | str) -> bool:
    """Editing is open on every non-terminal status, except for employees awaiting confirmation."""
    current = parse_status(status)
    if current in TERMINAL_STATUSES:
        return False
    if role_class_for(role_class) is _E and current is GoalStatus.PENDING_CONFIRMED:
        return False
    return True


def goal_affordances(status: GoalStatus | str, role_class: ActorRoleClass | str) -> list[AvailableAction]:
    """Buttons to render for a goal: Edit first (when allowed), then the legal transitions."""
    current = parse_status(status)
    role = role_class_for(role_class)
    affordances = []
    if edit_allowed(current, role):
        label = "Edit"
        if role is _M and current in _MANAGER_REVIEW_EDIT_STATUSES:
            label = "Review Progress"
        affordances.append(AvailableAction(Action.EDIT, current, label=label))
    affordances.extend(available_actions(current, role))
    return affordances


def waiting_label(status: GoalStatus | str, role_class: ActorRoleClass | str) -> Optional[str]:
    """Text shown to employees while the goal is out of their hands."""
    if role_class_for(role_class) is not _E:
        return None
    current = parse_status(status)
    if current is GoalStatus.PENDING_REVIEW:
        return "Awaiting Review"
    if current is GoalStatus.PENDING_CONFIRMED:
        return "Awaiting Confirmation"
    return None


def _validate_progress(progress: Any) -> int:
    if isinstance(progress, bool) or not isinstance(progress, int):
        raise ValueError("Progress must be an integer percentage")
    if progress < 0 or progress > 100:
        raise ValueError("Progress must be between 0 and 100")
    return progress


def _find_action(status: GoalStatus, role_class: ActorRoleClass, action: Action | str) -> AvailableAction:
    try:
        wanted = Action(action)
    except ValueError:
        raise IllegalTransition(status.value, str(action), role_class.value) from None
    for candidate in TRANSITIONS.get((status, role_class), ()):
        if candidate.action is wanted:
            return candidate
    raise IllegalTransition(status.value, wanted.value, role_class.value)


def apply_transition(
    goal: GoalSnapshot,
    action: Action | str,
    role_class: ActorRoleClass | str,
    progress: Optional[int] = None,
    now: Optional[datetime] = None,
) -> GoalSnapshot:
    """Return the goal after a legal transition. Forced progress wins over the caller's value.
    Raise IllegalTransition for actions outside available_actions, MissingFeedback for send-back."""
    current = parse_status(goal.status)
    role = role_class_for(role_class)
    allowed = _find_action(current, role, action)
    if allowed.requires_feedback:
        raise MissingFeedback(f"Action '{allowed.action.value}' requires feedback; use send_back")
    new_progress = progress_for(allowed.action)
    if new_progress is None:
        new_progress = goal.progress if progress is None else _validate_progress(progress)
    return replace(
        goal,
        status=allowed.resulting_status,
        progress=new_progress,
        updated_at=now or _utcnow(),
    )


def apply_edit(
    goal: GoalSnapshot,
    role_class: ActorRoleClass | str,
    progress: int,
    now: Optional[datetime] = None,
) -> GoalSnapshot:
    """Update progress without changing status. Raise IllegalTransition if editing is closed."""
    current = parse_status(goal.status)
    role = role_class_for(role_class)
    if not edit_allowed(current, role):
        raise IllegalTransition(current.value, Action.EDIT.value, role.value)
    return replace(
        goal,
        status=current,
        progress=_validate_progress(progress),
        updated_at=now or _utcnow(),
    )


def send_back(
    goal: GoalSnapshot,
    feedback_content: Optional[str],
    role_class: ActorRoleClass | str,
    source: str = FEEDBACK_SOURCE_MANAGER,
    now: Optional[datetime] = None,
) -> SendBackResult:
    """Revert a goal to an earlier status and produce the feedback record that explains why.
    Raise IllegalTransition outside pending_confirmed/reviewed for managers, MissingFeedback on blank content."""
    current = parse_status(goal.status)
    role = role_class_for(role_class)
    allowed = _find_action(current, role, Action.SEND_BACK)
    content = (feedback_content or "").strip()
    if not content:
        raise MissingFeedback()
    timestamp = now or _utcnow()
    reverted = replace(goal, status=allowed.resulting_status, updated_at=timestamp)
    feedback = FeedbackRecord(
        goal_id=goal.id,
        content=content,
        feedback_goal_status=SEND_BACK_FEEDBACK_STATUS[current],
        source=source,
        created_at=timestamp,
    )
    return SendBackResult(goal=reverted, feedback=feedback)
