import copy
import logging
import os
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from config import AppConfig
from database import BlobStore, DocumentStore, db
from emails import EmailDispatcher, SmtpTransport
from errors import GoalTrackerError
from goals import GoalService
from leaderboard import LeaderboardService
from notifications import NotificationService
from schemas import (
    USERS, Approval, CommentCreate, Countdown, EmailPreference, GoalCreate, GoalReviewReminderRequest,
    GoalUpdate, ProfileUpdate, RequestAction, RoleChange, TestEmailRequest, UserCreate,
)
from users import UserService

config = AppConfig.from_env()

logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class Services:
    """Everything the routes need, wired against one database"""

    def __init__(self, database, transport=None, app_config: Optional[AppConfig] = None):
        self.config = app_config or config
        self.store = DocumentStore(database)
        self.blobs = BlobStore(database)
        self.emails = EmailDispatcher(self.store, transport or SmtpTransport(self.config.email), self.config.email)
        self._wire(self.emails.on_notification_created)
        self.leaderboard = LeaderboardService(self.store)

    def _wire(self, on_created: Callable[[str], None]) -> None:
        self.notifications = NotificationService(self.store)
        self.notifications.add_hook(on_created)
        self.users = UserService(self.store, self.notifications)
        self.goals = GoalService(self.store, self.blobs, self.notifications)

    def for_request(self, background_tasks: BackgroundTasks) -> "Services":
        """Same stores, but notification emails go out after the response is sent"""
        scoped = copy.copy(self)
        scoped._wire(lambda notification_id: background_tasks.add_task(
            self.emails.on_notification_created, notification_id))
        return scoped


app = FastAPI(title="Goal Tracker API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.services = Services(db) if db is not None else None

security = HTTPBearer(auto_error=False)


@app.exception_handler(GoalTrackerError)
async def handle_domain_error(request: Request, exc: GoalTrackerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Utilities

def get_services(request: Request, background_tasks: BackgroundTasks) -> Services:
    services = request.app.state.services
    if services is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return services.for_request(background_tasks)


def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                      services: Services = Depends(get_services)) -> Optional[Dict[str, Any]]:
    """Light auth: the bearer token is the user id issued by the auth provider"""
    if not credentials:
        return None
    user = services.store.get(USERS, credentials.credentials)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


def get_current_user(user: Optional[Dict[str, Any]] = Depends(get_optional_user)) -> Dict[str, Any]:
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_supervisor(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "supervisor":
        raise HTTPException(status_code=403, detail="Supervisors only")
    return user


@app.get("/")
def read_root():
    return {"message": "Goal Tracker Backend Running"}


@app.get("/test")
def test_database(request: Request):
    info = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    services = request.app.state.services
    try:
        if services is not None:
            info["database"] = "✅ Available"
            info["connection_status"] = "Connected"
            info["collections"] = services.store.collection_names()
    except Exception as e:
        info["database"] = f"⚠️ Error: {str(e)[:60]}"
    return info


# Users

@app.post("/api/users", status_code=201)
def register(payload: UserCreate, services: Services = Depends(get_services)):
    return services.users.register(payload)


@app.get("/api/me")
def my_profile(user=Depends(get_current_user)):
    return user


@app.patch("/api/me")
def update_my_profile(payload: ProfileUpdate, user=Depends(get_current_user),
                      services: Services = Depends(get_services)):
    return services.users.update_profile(user, payload)


@app.post("/api/me/email-preference")
def update_email_preference(payload: EmailPreference, user=Depends(get_current_user),
                            services: Services = Depends(get_services)):
    return services.users.update_email_preference(user, payload.enable_emails)


@app.post("/api/me/supervisor-request")
def request_supervisor_access(user=Depends(get_current_user), services: Services = Depends(get_services)):
    return services.users.request_supervisor(user)


@app.post("/api/me/goal-check")
def check_my_goals(user=Depends(get_current_user), services: Services = Depends(get_services)):
    """Called by the client after login"""
    return services.goals.check_goal_minimum(user)


@app.get("/api/users")
def list_users(role: Optional[str] = None, _=Depends(require_supervisor),
               services: Services = Depends(get_services)):
    return services.users.list(role)


@app.put("/api/users/{user_id}/role")
def change_role(user_id: str, payload: RoleChange, user=Depends(require_supervisor),
                services: Services = Depends(get_services)):
    return services.users.set_role(user, user_id, payload.role)


# Goals

@app.post("/api/goals", status_code=201)
def create_goal(payload: GoalCreate, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return services.goals.create(user, payload)


@app.get("/api/goals")
def list_goals(apprentice_id: Optional[str] = None, submitted: Optional[bool] = None,
               approved: Optional[bool] = None, user=Depends(get_current_user),
               services: Services = Depends(get_services)):
    return services.goals.list_for(user, apprentice_id, submitted, approved)


@app.get("/api/goals/{goal_id}")
def get_goal(goal_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return services.goals.get(goal_id, user)


@app.put("/api/goals/{goal_id}")
def update_goal(goal_id: str, payload: GoalUpdate, user=Depends(get_current_user),
                services: Services = Depends(get_services)):
    return services.goals.update(goal_id, user, payload)


@app.delete("/api/goals/{goal_id}")
def delete_goal(goal_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    services.goals.delete(goal_id, user)
    return {"deleted": True}


@app.post("/api/goals/{goal_id}/submit")
def submit_goal(goal_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return services.goals.submit(goal_id, user)


@app.post("/api/goals/{goal_id}/comments")
def add_comment(goal_id: str, payload: CommentCreate, user=Depends(get_current_user),
                services: Services = Depends(get_services)):
    return services.goals.add_comment(goal_id, user, payload.text)


@app.post("/api/goals/{goal_id}/approve")
def approve_goal(goal_id: str, payload: Approval, user=Depends(get_current_user),
                 services: Services = Depends(get_services)):
    return services.goals.approve(goal_id, user, payload.rating, payload.comment)


@app.get("/api/goals/{goal_id}/evidence")
def list_evidence(goal_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return services.goals.list_evidence(goal_id, user)


@app.post("/api/goals/{goal_id}/evidence", status_code=201)
async def upload_evidence(goal_id: str, file: UploadFile = File(...), user=Depends(get_current_user),
                          services: Services = Depends(get_services)):
    data = await file.read()
    return services.goals.upload_evidence(goal_id, user, file.filename, data, file.content_type)


@app.get("/api/goals/{goal_id}/evidence/{filename}")
def download_evidence(goal_id: str, filename: str, user=Depends(get_current_user),
                      services: Services = Depends(get_services)):
    data = services.goals.read_evidence(goal_id, user, filename)
    return Response(content=data, media_type="application/octet-stream",
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@app.delete("/api/goals/{goal_id}/evidence/{filename}")
def delete_evidence(goal_id: str, filename: str, user=Depends(get_current_user),
                    services: Services = Depends(get_services)):
    services.goals.delete_evidence(goal_id, user, filename)
    return {"deleted": True}


# Notifications

@app.get("/api/notifications")
def my_notifications(unread: bool = False, limit: int = 50, user=Depends(get_current_user),
                     services: Services = Depends(get_services)):
    return services.notifications.list_for(user, limit=limit, unread_only=unread)


@app.post("/api/notifications/read-all")
def mark_all_read(user=Depends(get_current_user), services: Services = Depends(get_services)):
    return {"updated": services.notifications.mark_all_read(user)}


@app.post("/api/notifications/{notification_id}/read")
def mark_read(notification_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return services.notifications.mark_read(notification_id, user)


@app.post("/api/notifications/{notification_id}/supervisor-request")
def resolve_supervisor_request(notification_id: str, payload: RequestAction, user=Depends(get_current_user),
                               services: Services = Depends(get_services)):
    return services.notifications.resolve_supervisor_request(notification_id, payload.action, user)


# Leaderboard

@app.get("/api/leaderboard")
def get_leaderboard(user=Depends(get_current_user), services: Services = Depends(get_services)):
    standings = services.leaderboard.compute()
    my_rank = None
    if user.get("role") == "apprentice":
        my_rank = services.leaderboard.rank_of(standings, user["id"])
    for s in standings:
        s["average_rating"] = round(s["average_rating"], 2)
    settings = services.leaderboard.get_settings()
    return {
        "standings": standings,
        "apprentice_of_the_year": services.leaderboard.champion(standings),
        "reset_timestamp": settings["leaderboard_reset_timestamp"],
        "countdown": settings["countdown"],
        "my_rank": my_rank,
    }


@app.post("/api/leaderboard/reset")
def reset_leaderboard(user=Depends(get_current_user), services: Services = Depends(get_services)):
    return services.leaderboard.reset(user)


@app.get("/api/leaderboard/settings")
def leaderboard_settings(_=Depends(get_current_user), services: Services = Depends(get_services)):
    return services.leaderboard.get_settings()


@app.put("/api/leaderboard/countdown")
def set_countdown(payload: Countdown, user=Depends(get_current_user), services: Services = Depends(get_services)):
    return services.leaderboard.update_countdown(user, payload)


@app.delete("/api/leaderboard/countdown")
def clear_countdown(user=Depends(get_current_user), services: Services = Depends(get_services)):
    return services.leaderboard.clear_countdown(user)


# Email

@app.post("/api/test-email")
def test_email(payload: TestEmailRequest, services: Services = Depends(get_services)):
    if not payload.email:
        return JSONResponse(status_code=400, content={"error": "Email is required"})
    result = services.emails.send_test_email(payload.email)
    if not result.success:
        return JSONResponse(status_code=500, content={"error": result.error})
    return {"success": True, "message_id": result.message_id}


@app.post("/api/process-notification/{notification_id}")
def process_notification(notification_id: str, services: Services = Depends(get_services)):
    try:
        result = services.emails.process_notification(notification_id)
    except GoalTrackerError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.message})
    if not result.success:
        return JSONResponse(status_code=400, content={"error": result.error})
    return {"success": True, "message_id": result.message_id}


@app.post("/api/goal-review-reminder")
def goal_review_reminder(payload: GoalReviewReminderRequest, user=Depends(get_optional_user),
                         services: Services = Depends(get_services)):
    result = services.emails.send_goal_review_reminder(
        user, payload.recipient_email, payload.recipient_name, payload.goals, payload.supervisor_id)
    return result.model_dump()


class WeeklyRunResult(BaseModel):
    supervisors: int
    goals: int
    sent: int
    failed: int
    skipped: int


@app.post("/api/tasks/weekly-reminders", response_model=WeeklyRunResult)
def weekly_reminders(x_cron_token: Optional[str] = Header(None), user=Depends(get_optional_user),
                     services: Services = Depends(get_services)):
    trusted = services.config.cron_token and x_cron_token == services.config.cron_token
    if not trusted and (not user or user.get("role") != "supervisor"):
        raise HTTPException(status_code=403, detail="Cron token or supervisor required")
    return services.emails.run_weekly_reminders()


# Schema endpoint for tooling
@app.get("/schema")
def get_schema_models():
    return {
        "models": [
            "User", "Goal", "Notification", "LeaderboardSettings", "ReminderLog"
        ]
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.port)
