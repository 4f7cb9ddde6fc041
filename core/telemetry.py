# ABOUTME: Workflow decision telemetry: one structured JSON log line per transition, send-back or edit.
# ABOUTME: Printed to stdout so log shippers can index goal lifecycle changes.

import json
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass
class WorkflowLogEntry:
    """Structured telemetry entry for one workflow decision."""

    timestamp: str
    goal_id: str
    action: str
    role_class: str
    from_status: str | None
    to_status: str | None
    progress: int | None
    success: bool
    error: str | None = None
    attempts: int = 1

    def to_json(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp,
                "event": "goal_workflow",
                "goal_id": self.goal_id,
                "action": self.action,
                "role_class": self.role_class,
                "from_status": self.from_status,
                "to_status": self.to_status,
                "progress": self.progress,
                "success": self.success,
                "error": self.error,
                "attempts": self.attempts,
            }
        )


def log_decision(
    *,
    goal_id,
    action: str,
    role_class: str,
    from_status: str | None,
    to_status: str | None,
    progress: int | None,
    success: bool,
    error: str | None = None,
    attempts: int = 1,
) -> None:
    """Print a structured JSON log line to stdout for one workflow decision."""
    entry = WorkflowLogEntry(
        timestamp=datetime.now(tz=timezone.utc).isoformat(),
        goal_id=str(goal_id),
        action=action,
        role_class=role_class,
        from_status=from_status,
        to_status=to_status,
        progress=progress,
        success=success,
        error=error,
        attempts=attempts,
    )
    print(entry.to_json(), flush=True)
