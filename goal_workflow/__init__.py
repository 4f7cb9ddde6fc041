# ABOUTME: Goal workflow package; role-aware goal lifecycle state machine.
# ABOUTME: Use available_actions / apply_transition / send_back from goal_workflow.engine.

from goal_workflow.engine import (
    Action,
    ActorRoleClass,
    AvailableAction,
    FeedbackRecord,
    GoalOrigin,
    GoalSnapshot,
    GoalStatus,
    SendBackResult,
    UserRole,
    apply_edit,
    apply_transition,
    available_actions,
    goal_affordances,
    initial_status,
    parse_status,
    role_class_for,
    send_back,
)
from goal_workflow.errors import (
    IllegalTransition,
    MissingFeedback,
    UnknownStatus,
    WorkflowError,
)

__all__ = [
    "Action",
    "ActorRoleClass",
    "AvailableAction",
    "FeedbackRecord",
    "GoalOrigin",
    "GoalSnapshot",
    "GoalStatus",
    "IllegalTransition",
    "MissingFeedback",
    "SendBackResult",
    "UnknownStatus",
    "UserRole",
    "WorkflowError",
    "apply_edit",
    "apply_transition",
    "available_actions",
    "goal_affordances",
    "initial_status",
    "parse_status",
    "role_class_for",
    "send_back",
]
