"""
Database Schemas for the Goal Tracker

Each Pydantic model maps to a MongoDB collection:
- User -> "users"
- Goal -> "goals"
- Notification -> "notifications"
- LeaderboardSettings -> "settings" (single document with id "leaderboard")
- ReminderLog -> "reminder_logs"

Evidence files are not documents; they live in GridFS under
evidence/<apprentice_id>/<goal_id>/<filename>.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

USERS = "users"
GOALS = "goals"
NOTIFICATIONS = "notifications"
SETTINGS = "settings"
REMINDER_LOGS = "reminder_logs"

LEADERBOARD_SETTINGS_ID = "leaderboard"

Role = Literal["apprentice", "supervisor"]
SenderRole = Literal["apprentice", "supervisor", "system"]
Category = Literal["technical", "soft", "education", "project"]
GoalStatus = Literal["planned", "in_progress", "completed"]
RequestStatus = Literal["none", "pending", "approved", "denied"]
NotificationType = Literal[
    "comment", "approval", "submission", "rating",
    "goal_reminder", "supervisor_request", "supervisor_request_result",
]

MIN_GOALS = 3


def check_rating(v: float) -> float:
    if v < 0 or v > 5 or (v * 2) != int(v * 2):
        raise ValueError("Rating must be between 0 and 5 in steps of 0.5")
    return v


class User(BaseModel):
    first_name: str = Field(..., description="Given name")
    last_name: str = Field(..., description="Family name")
    email: EmailStr = Field(..., description="Unique email, also the email notification target")
    role: Role = Field("apprentice", description="System role")
    email_notifications: bool = Field(True, description="Whether notification emails are sent")
    supervisor_request_status: RequestStatus = Field("none", description="Supervisor access request lifecycle")


class Comment(BaseModel):
    text: str
    author_id: str
    author_name: str
    author_role: Optional[SenderRole] = None
    created_at: datetime


class Goal(BaseModel):
    title: str = Field(..., min_length=1, description="Short goal title")
    description: str = Field("", description="What the apprentice wants to achieve")
    category: Category = Field("technical")
    status: GoalStatus = Field("planned")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    apprentice_id: str = Field(..., description="Owning user id")
    apprentice_name: str = Field(..., description="Owner display name at creation time")
    submitted: bool = False
    submitted_at: Optional[datetime] = None
    approved: bool = False
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = Field(None, description="Supervisor user id who approved")
    rating: float = Field(0, description="0-5 in steps of 0.5, meaningful once approved")
    comments: List[Comment] = Field(default_factory=list)

    @field_validator("rating")
    @classmethod
    def valid_rating(cls, v: float) -> float:
        return check_rating(v)


class Notification(BaseModel):
    recipient_id: str
    recipient_role: Role
    sender_id: str
    sender_name: str
    sender_role: SenderRole
    type: NotificationType
    goal_id: Optional[str] = None
    goal_title: Optional[str] = None
    message: str
    read: bool = False
    action_link: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None


class Countdown(BaseModel):
    title: str = Field("Countdown")
    description: str = Field("")
    end_date: datetime
    background_color: str = Field("#f0f7ff")
    text_color: str = Field("#000000")
    completion_message: str = Field("Time is up!")


class LeaderboardSettings(BaseModel):
    countdown: Optional[Countdown] = None
    leaderboard_reset_timestamp: Optional[datetime] = Field(
        None, description="Start of the current scoring period")


class ReminderLog(BaseModel):
    type: Literal["weekly_goal_review_reminder", "manual_goal_review_reminder"]
    recipient_email: str
    recipient_name: str
    supervisor_id: Optional[str] = None
    goal_count: int
    days_remaining: int
    sent_at: datetime


# ---------- Request payloads ----------

class UserCreate(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    request_supervisor: bool = Field(False, description="Ask existing supervisors for supervisor access")


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class RoleChange(BaseModel):
    role: Role


class EmailPreference(BaseModel):
    enable_emails: Any = None


class GoalCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    category: Category = "technical"
    status: GoalStatus = "planned"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class GoalUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[Category] = None
    status: Optional[GoalStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class CommentCreate(BaseModel):
    text: str


class Approval(BaseModel):
    rating: float
    comment: Optional[str] = None


class RequestAction(BaseModel):
    action: Literal["approve", "deny"]


class TestEmailRequest(BaseModel):
    email: Optional[str] = None


class ReminderGoal(BaseModel):
    id: Optional[str] = None
    title: str
    apprentice_name: str = ""
    submitted_at: Optional[datetime] = None


class GoalReviewReminderRequest(BaseModel):
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    goals: Any = None
    supervisor_id: Optional[str] = None
