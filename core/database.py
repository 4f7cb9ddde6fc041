# ABOUTME: SQLModel tables (users, goals, feedbacks) and SQLite session factory.
# ABOUTME: save_workflow_result writes a goal decision (and its feedback) atomically with a status/version check.

import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import update
from sqlmodel import Field, Session, SQLModel, create_engine

from goal_workflow.engine import (
    FeedbackRecord,
    GoalOrigin,
    GoalSnapshot,
    UserRole,
    parse_status,
)

_db_path = os.environ.get("GOALS_DB_PATH", "goals.db")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StaleGoalError(Exception):
    """Goal changed between read and conditional write; re-read and decide again."""

    def __init__(self, goal_id):
        self.goal_id = goal_id
        super().__init__(f"Goal {goal_id} was modified concurrently")


class User(SQLModel, table=True):
    """User account for authentication. Passwords stored as hashes only."""

    __tablename__ = "users"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    username: str = Field(unique=True, index=True)
    password_hash: str = Field()
    full_name: str = ""
    title: str = ""
    department: str = ""
    role: str = Field(default=UserRole.EMPLOYEE.value, index=True)
    manager_id: Optional[UUID] = Field(default=None, foreign_key="users.id", index=True)
    created_at: datetime = Field(default_factory=_utcnow)


class Goal(SQLModel, table=True):
    """Persisted goal; status and progress change only through the workflow engine."""

    __tablename__ = "goals"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    title: str
    description: str = ""
    category: str = ""
    origin: str = GoalOrigin.SELF.value
    start_date: Optional[datetime] = None
    target_date: Optional[datetime] = None
    status: str = "draft"
    progress: int = 0
    manager_id: Optional[UUID] = Field(default=None, foreign_key="users.id")
    comments: str = "[]"  # JSON array of {"text", "timestamp"}
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def to_snapshot(self) -> GoalSnapshot:
        """Engine view of this row. Legacy 'review' maps to pending_review; unknown statuses raise UnknownStatus."""
        # Rows written before origin was validated may carry other values; only "Manager" is special.
        origin = GoalOrigin.MANAGER if self.origin == GoalOrigin.MANAGER.value else GoalOrigin.SELF
        return GoalSnapshot(
            id=self.id,
            status=parse_status(self.status),
            progress=self.progress,
            origin=origin,
            manager_id=self.manager_id,
            updated_at=self.updated_at,
        )

    def comment_list(self) -> list[dict]:
        return json.loads(self.comments) if self.comments else []


class Feedback(SQLModel, table=True):
    """Reviewer feedback attached to a goal by a send-back."""

    __tablename__ = "feedbacks"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: Optional[UUID] = Field(default=None, foreign_key="users.id", index=True)
    goal_id: UUID = Field(foreign_key="goals.id", index=True)
    content: str
    source: str
    feedback_goal_status: str
    created_at: datetime = Field(default_factory=_utcnow)


_engine = create_engine(
    f"sqlite:///{_db_path}",
    connect_args={"check_same_thread": False},
)


def init_db() -> None:
    """Create all tables if they do not exist."""
    SQLModel.metadata.create_all(_engine)


@contextmanager
def get_session():
    """Yield an SQLite session for the default engine."""
    init_db()
    with Session(_engine) as session:
        yield session


def save_workflow_result(
    session: Session,
    goal_id: UUID,
    expected_status: str,
    expected_version: int,
    goal: GoalSnapshot,
    *,
    feedback: FeedbackRecord | None = None,
    author_id: UUID | None = None,
    comments: list[dict] | None = None,
) -> tuple[Goal, Feedback | None]:
    """Persist a workflow decision only if the stored status and version are still the ones it was decided on.
    The goal update and the optional feedback row commit together; raise StaleGoalError when nothing matched."""
    values = {
        "status": goal.status.value,
        "progress": goal.progress,
        "updated_at": goal.updated_at or _utcnow(),
        "version": expected_version + 1,
    }
    if comments is not None:
        values["comments"] = json.dumps(comments)
    stmt = (
        update(Goal)
        .where(
            Goal.id == goal_id,
            Goal.status == expected_status,
            Goal.version == expected_version,
        )
        .values(**values)
    )
    feedback_row = None
    try:
        result = session.connection().execute(stmt)
        if result.rowcount != 1:
            raise StaleGoalError(goal_id)
        if feedback is not None:
            feedback_row = Feedback(
                user_id=author_id,
                goal_id=goal_id,
                content=feedback.content,
                source=feedback.source,
                feedback_goal_status=feedback.feedback_goal_status,
                created_at=feedback.created_at,
            )
            session.add(feedback_row)
        session.commit()
    except Exception:
        session.rollback()
        raise
    saved = session.get(Goal, goal_id)
    session.refresh(saved)
    if feedback_row is not None:
        session.refresh(feedback_row)
    return saved, feedback_row
