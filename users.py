import logging
from typing import Any, Dict, List, Optional

from database import DocumentStore, utcnow
from errors import NotFoundError, PermissionDeniedError, ValidationError
from notifications import NotificationService
from schemas import USERS, ProfileUpdate, User, UserCreate

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, store: DocumentStore, notifications: NotificationService):
        self.store = store
        self.notifications = notifications

    def get(self, user_id: str) -> Dict[str, Any]:
        user = self.store.get(USERS, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def list(self, role: Optional[str] = None) -> List[Dict[str, Any]]:
        filters = {"role": role} if role else {}
        return self.store.query(USERS, filters, order_by="last_name")

    def register(self, payload: UserCreate) -> Dict[str, Any]:
        email = payload.email.lower()
        if self.store.query(USERS, {"email": email}, limit=1):
            raise ValidationError("Email already exists")
        # Everyone starts as an apprentice; supervisor access has to be granted
        user = User(
            first_name=payload.first_name,
            last_name=payload.last_name,
            email=email,
            role="apprentice",
        )
        user_id = self.store.add(USERS, user.model_dump())
        logger.info("Registered user %s", user_id)
        created = self.get(user_id)
        if payload.request_supervisor:
            created = self.request_supervisor(created)
        return created

    def update_profile(self, user: Dict[str, Any], payload: ProfileUpdate) -> Dict[str, Any]:
        updates = {k: v for k, v in payload.model_dump().items() if v is not None}
        if updates:
            updates["updated_at"] = utcnow()
            self.store.update(USERS, user["id"], updates)
        return self.get(user["id"])

    def update_email_preference(self, user: Dict[str, Any], enable_emails: Any) -> Dict[str, Any]:
        # Anything but a literal true switches emails off
        enabled = enable_emails is True
        now = utcnow()
        self.store.update(USERS, user["id"], {
            "email_notifications": enabled,
            "email_preference_updated_at": now,
            "updated_at": now,
        })
        return {"success": True, "email_notifications": enabled}

    def set_role(self, actor: Dict[str, Any], user_id: str, role: str) -> Dict[str, Any]:
        if actor.get("role") != "supervisor":
            raise PermissionDeniedError("Supervisors only")
        self.get(user_id)
        now = utcnow()
        fields = {
            "role": role,
            "role_updated_at": now,
            "role_updated_by": actor["id"],
            "updated_at": now,
        }
        if role == "apprentice":
            # A demoted supervisor may ask for access again
            fields["supervisor_request_status"] = "none"
        self.store.update(USERS, user_id, fields)
        return self.get(user_id)

    def request_supervisor(self, user: Dict[str, Any]) -> Dict[str, Any]:
        if user.get("role") == "supervisor":
            raise ValidationError("User is already a supervisor")
        status = user.get("supervisor_request_status", "none")
        if status not in ("none", "denied"):
            raise ValidationError(f"Supervisor request is already {status}")
        if not self.store.update(USERS, user["id"], {
            "supervisor_request_status": "pending",
            "supervisor_requested_at": utcnow(),
        }, where={"role": {"$ne": "supervisor"}, "supervisor_request_status": {"$nin": ["pending", "approved"]}}):
            raise ValidationError("Supervisor request is already pending")
        user = self.get(user["id"])
        try:
            self.notifications.notify_supervisor_request(user)
        except Exception:
            logger.exception("Could not notify supervisors about request of %s", user["id"])
        return user
