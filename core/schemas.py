# ABOUTME: Pydantic request bodies for goal creation, workflow transitions, send-back and edits.
# ABOUTME: Field limits here are the API-side validation; the engine re-checks what it depends on.

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from core.config import MAX_COMMENT_LENGTH, MAX_FEEDBACK_LENGTH
from goal_workflow.engine import Action, GoalOrigin, UserRole


class GoalCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    category: str = ""
    origin: GoalOrigin = GoalOrigin.SELF
    # Reportee the goal is assigned to; only used with origin=Manager.
    user_id: Optional[UUID] = None
    start_date: Optional[datetime] = None
    target_date: Optional[datetime] = None
    progress: int = Field(default=0, ge=0, le=100)


class TransitionRequest(BaseModel):
    action: Action
    progress: Optional[int] = Field(default=None, ge=0, le=100)


class SendBackRequest(BaseModel):
    # Blank content is allowed through so the engine reports MissingFeedback.
    content: str = Field(default="", max_length=MAX_FEEDBACK_LENGTH)


class GoalEditRequest(BaseModel):
    progress: int = Field(ge=0, le=100)
    comment: Optional[str] = Field(default=None, max_length=MAX_COMMENT_LENGTH)


class UserUpdateRequest(BaseModel):
    role: Optional[UserRole] = None
    manager_id: Optional[UUID] = None
