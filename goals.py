"""
Goal lifecycle

planned/in_progress/completed is the apprentice's own progress marker.
Review state is separate: a goal is created unsubmitted, the owner submits
it (after which it is frozen for the owner, evidence included), and a
supervisor approves it with a rating. Notifications for these steps are
side effects; their failure is logged and never undoes the step.
"""
import logging
from typing import Any, Dict, List, Optional

from database import BlobStore, DocumentStore, utcnow
from errors import NotFoundError, PermissionDeniedError, ValidationError
from notifications import NotificationService, display_name
from schemas import GOALS, MIN_GOALS, Comment, Goal, GoalCreate, GoalUpdate, check_rating

logger = logging.getLogger(__name__)


def evidence_prefix(goal: Dict[str, Any]) -> str:
    return f"evidence/{goal['apprentice_id']}/{goal['id']}"


class GoalService:
    def __init__(self, store: DocumentStore, blobs: BlobStore, notifications: NotificationService):
        self.store = store
        self.blobs = blobs
        self.notifications = notifications

    # ---------- lookups ----------

    def _load(self, goal_id: str) -> Dict[str, Any]:
        goal = self.store.get(GOALS, goal_id)
        if not goal:
            raise NotFoundError("Goal not found")
        return goal

    def _owned(self, goal_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        goal = self._load(goal_id)
        if goal["apprentice_id"] != user["id"]:
            raise PermissionDeniedError("Only the owner can change this goal")
        return goal

    def _editable(self, goal_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        goal = self._owned(goal_id, user)
        if goal.get("submitted"):
            raise ValidationError("This goal has already been submitted and cannot be edited")
        return goal

    def get(self, goal_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        goal = self._load(goal_id)
        if user.get("role") != "supervisor" and goal["apprentice_id"] != user["id"]:
            raise PermissionDeniedError("You do not have access to this goal")
        return goal

    def list_for(self, user: Dict[str, Any], apprentice_id: Optional[str] = None,
                 submitted: Optional[bool] = None, approved: Optional[bool] = None) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {}
        if user.get("role") == "supervisor":
            if apprentice_id:
                filters["apprentice_id"] = apprentice_id
        else:
            if apprentice_id and apprentice_id != user["id"]:
                raise PermissionDeniedError("Apprentices can only list their own goals")
            filters["apprentice_id"] = user["id"]
        if submitted is not None:
            filters["submitted"] = submitted
        if approved is not None:
            filters["approved"] = approved
        return self.store.query(GOALS, filters, order_by="created_at", descending=True)

    # ---------- owner actions ----------

    def create(self, user: Dict[str, Any], payload: GoalCreate) -> Dict[str, Any]:
        if user.get("role") != "apprentice":
            raise PermissionDeniedError("Only apprentices can create goals")
        goal = Goal(
            apprentice_id=user["id"],
            apprentice_name=display_name(user),
            **payload.model_dump(),
        )
        goal_id = self.store.add(GOALS, goal.model_dump())
        logger.info("Goal %s created by %s", goal_id, user["id"])
        return self._load(goal_id)

    def update(self, goal_id: str, user: Dict[str, Any], payload: GoalUpdate) -> Dict[str, Any]:
        self._editable(goal_id, user)
        updates = {k: v for k, v in payload.model_dump().items() if v is not None}
        if updates:
            updates["updated_at"] = utcnow()
            self.store.update(GOALS, goal_id, updates)
        return self._load(goal_id)

    def delete(self, goal_id: str, user: Dict[str, Any]) -> None:
        goal = self._editable(goal_id, user)
        self.blobs.delete_prefix(evidence_prefix(goal))
        self.store.delete(GOALS, goal_id)
        logger.info("Goal %s deleted by %s", goal_id, user["id"])

    def submit(self, goal_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        self._editable(goal_id, user)
        now = utcnow()
        if not self.store.update(GOALS, goal_id, {"submitted": True, "submitted_at": now, "updated_at": now},
                                 where={"submitted": False}):
            raise ValidationError("This goal has already been submitted")
        goal = self._load(goal_id)
        try:
            self.notifications.notify_submission(goal, user)
        except Exception:
            logger.exception("Submission notification failed for goal %s", goal_id)
        return goal

    # ---------- evidence ----------

    def upload_evidence(self, goal_id: str, user: Dict[str, Any], filename: str,
                        data: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
        goal = self._editable(goal_id, user)
        name = (filename or "").replace("\\", "/").split("/")[-1]
        if not name:
            raise ValidationError("Filename is required")
        path = f"{evidence_prefix(goal)}/{name}"
        self.blobs.upload(path, data, content_type)
        return {"name": name, "path": path, "size": len(data), "content_type": content_type}

    def list_evidence(self, goal_id: str, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        goal = self.get(goal_id, user)
        return self.blobs.list(evidence_prefix(goal))

    def read_evidence(self, goal_id: str, user: Dict[str, Any], filename: str) -> bytes:
        goal = self.get(goal_id, user)
        data = self.blobs.read(f"{evidence_prefix(goal)}/{filename}")
        if data is None:
            raise NotFoundError("File not found")
        return data

    def delete_evidence(self, goal_id: str, user: Dict[str, Any], filename: str) -> None:
        goal = self._editable(goal_id, user)
        if not self.blobs.delete(f"{evidence_prefix(goal)}/{filename}"):
            raise NotFoundError("File not found")

    # ---------- review ----------

    def add_comment(self, goal_id: str, user: Dict[str, Any], text: str) -> Dict[str, Any]:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Comment text is required")
        goal = self.get(goal_id, user)
        comment = Comment(
            text=text,
            author_id=user["id"],
            author_name=display_name(user),
            author_role=user.get("role"),
            created_at=utcnow(),
        )
        self.store.push(GOALS, goal_id, "comments", comment.model_dump(), extra={"updated_at": utcnow()})
        # Only submitted goals are in front of a reviewer
        if goal.get("submitted") or user.get("role") == "supervisor":
            try:
                self.notifications.notify_comment(goal, user)
            except Exception:
                logger.exception("Comment notification failed for goal %s", goal_id)
        return self._load(goal_id)

    def approve(self, goal_id: str, user: Dict[str, Any], rating: float,
                comment: Optional[str] = None) -> Dict[str, Any]:
        if user.get("role") != "supervisor":
            raise PermissionDeniedError("Only supervisors can approve goals")
        goal = self._load(goal_id)
        if not goal.get("submitted"):
            raise ValidationError("This goal has not been submitted for review yet")
        if goal.get("approved"):
            raise ValidationError("This goal has already been approved")
        try:
            check_rating(rating)
        except ValueError as e:
            raise ValidationError(str(e))
        if rating <= 0:
            raise ValidationError("Please provide a rating before approving this goal")

        now = utcnow()
        updates = {
            "approved": True,
            "rating": rating,
            "approved_at": now,
            "approved_by": user["id"],
            "updated_at": now,
        }
        # Re-checked inside the write so two reviewers cannot both approve
        pending = {"submitted": True, "approved": False}
        if comment and comment.strip():
            c = Comment(text=comment.strip(), author_id=user["id"], author_name=display_name(user),
                        author_role="supervisor", created_at=now)
            written = self.store.push(GOALS, goal_id, "comments", c.model_dump(), extra=updates, where=pending)
        else:
            written = self.store.update(GOALS, goal_id, updates, where=pending)
        if not written:
            raise ValidationError("This goal has already been approved")
        goal = self._load(goal_id)
        logger.info("Goal %s approved by %s with rating %s", goal_id, user["id"], rating)
        try:
            self.notifications.notify_approval(goal, user)
        except Exception:
            logger.exception("Approval notification failed for goal %s", goal_id)
        return goal

    def check_goal_minimum(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Remind apprentices with fewer than MIN_GOALS goals, typically on login"""
        if user.get("role") != "apprentice":
            return {"goal_count": 0, "notification_sent": False}
        goal_count = self.store.count(GOALS, {"apprentice_id": user["id"]})
        if goal_count >= MIN_GOALS:
            return {"goal_count": goal_count, "notification_sent": False}
        try:
            self.notifications.notify_goal_reminder(user, goal_count)
        except Exception:
            logger.exception("Goal reminder failed for %s", user["id"])
            return {"goal_count": goal_count, "notification_sent": False}
        return {"goal_count": goal_count, "notification_sent": True}
