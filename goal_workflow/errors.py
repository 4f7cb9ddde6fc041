# ABOUTME: Exceptions raised by the goal workflow engine.
# ABOUTME: Callers classify these into HTTP status codes / UI messages; the engine never coerces them.


class WorkflowError(Exception):
    """Base class for goal workflow decisions that cannot be applied."""


class IllegalTransition(WorkflowError):
    """Requested action is not legal for the goal's current status and actor role class."""

    def __init__(self, status: str, action: str, role_class: str):
        self.status = status
        self.action = action
        self.role_class = role_class
        super().__init__(
            f"Action '{action}' is not allowed for {role_class} on a goal in status '{status}'"
        )


class MissingFeedback(WorkflowError):
    """Send-back attempted without feedback content."""

    def __init__(self, message: str = "Feedback is required before sending a goal back"):
        super().__init__(message)


class UnknownStatus(WorkflowError):
    """Persisted status value is outside the closed status enumeration."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Unknown goal status: {value!r}")
