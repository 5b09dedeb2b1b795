"""
Notification service

Writes notification documents and decides who receives them. Delivery is
best effort: fan-out to several recipients is sequential with no
atomicity across recipients, so a failure part way through leaves the
earlier recipients notified and the rest not. Nothing is retried.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from database import DocumentStore, utcnow
from errors import NotFoundError, PermissionDeniedError, ValidationError
from schemas import MIN_GOALS, NOTIFICATIONS, USERS, Notification

logger = logging.getLogger(__name__)

SYSTEM_SENDER = {"id": "system", "name": "ZielManager System", "role": "system"}

CreationHook = Callable[[str], Any]


def display_name(user: Dict[str, Any]) -> str:
    name = f"{user.get('first_name', '')} {user.get('last_name', '')}".strip()
    return name or user.get("email") or "Unknown"


def format_rating(rating: float) -> str:
    return str(int(rating)) if float(rating).is_integer() else str(rating)


def _sender(user: Dict[str, Any]) -> Dict[str, str]:
    if user is SYSTEM_SENDER:
        return SYSTEM_SENDER
    return {"id": user["id"], "name": display_name(user), "role": user.get("role", "apprentice")}


class NotificationService:
    def __init__(self, store: DocumentStore):
        self.store = store
        self.hooks: List[CreationHook] = []

    def add_hook(self, hook: CreationHook) -> None:
        """Register a callable run with the id of every created notification"""
        self.hooks.append(hook)

    def _fire(self, notification_id: str) -> None:
        for hook in self.hooks:
            try:
                hook(notification_id)
            except Exception:
                logger.exception("Notification hook failed for %s", notification_id)

    def notify(self, recipient_id: str, recipient_role: str, sender: Dict[str, Any], type: str,
               message: str, goal: Optional[Dict[str, Any]] = None,
               additional_data: Optional[Dict[str, Any]] = None,
               action_link: Optional[str] = None) -> str:
        s = _sender(sender)
        n = Notification(
            recipient_id=recipient_id,
            recipient_role=recipient_role,
            sender_id=s["id"],
            sender_name=s["name"],
            sender_role=s["role"],
            type=type,
            goal_id=goal["id"] if goal else None,
            goal_title=goal.get("title") if goal else None,
            message=message,
            read=False,
            action_link=action_link,
            additional_data=additional_data,
        )
        data = n.model_dump()
        data["created_at"] = utcnow()
        notification_id = self.store.add(NOTIFICATIONS, data)
        logger.info("Created %s notification %s for %s", type, notification_id, recipient_id)
        self._fire(notification_id)
        return notification_id

    def get_supervisors(self) -> List[Dict[str, Any]]:
        return self.store.query(USERS, {"role": "supervisor"})

    def notify_all_supervisors(self, sender: Dict[str, Any], type: str, message: str,
                               goal: Optional[Dict[str, Any]] = None,
                               additional_data: Optional[Dict[str, Any]] = None) -> List[str]:
        supervisors = self.get_supervisors()
        if not supervisors:
            logger.warning("No supervisors found to notify about %s", type)
        ids = []
        for supervisor in supervisors:
            data = dict(additional_data) if additional_data else None
            ids.append(self.notify(supervisor["id"], "supervisor", sender, type, message,
                                   goal=goal, additional_data=data))
        return ids

    def notify_comment(self, goal: Dict[str, Any], commenter: Dict[str, Any]) -> List[str]:
        message = f"{display_name(commenter)} commented on a goal"
        if commenter.get("role") == "supervisor":
            return [self.notify(goal["apprentice_id"], "apprentice", commenter, "comment", message, goal=goal)]
        if goal.get("approved_by"):
            return [self.notify(goal["approved_by"], "supervisor", commenter, "comment", message, goal=goal)]
        return self.notify_all_supervisors(commenter, "comment", message, goal=goal)

    def notify_submission(self, goal: Dict[str, Any], apprentice: Dict[str, Any]) -> List[str]:
        message = f"{display_name(apprentice)} submitted a goal for review"
        return self.notify_all_supervisors(apprentice, "submission", message, goal=goal)

    def notify_approval(self, goal: Dict[str, Any], supervisor: Dict[str, Any]) -> str:
        message = f"Your goal was approved with {format_rating(goal['rating'])} stars"
        return self.notify(goal["apprentice_id"], "apprentice", supervisor, "approval", message, goal=goal)

    def notify_goal_reminder(self, user: Dict[str, Any], goal_count: int) -> str:
        needed = MIN_GOALS - goal_count
        name = user.get("first_name") or display_name(user)
        if needed == 1:
            message = f"You're almost there, {name}! Just 1 more goal to reach the recommended minimum."
        else:
            message = (f"Welcome back, {name}! Don't forget to create {needed} more goals "
                       f"to reach the recommended minimum.")
        return self.notify(user["id"], "apprentice", SYSTEM_SENDER, "goal_reminder", message,
                           action_link="/goals/create")

    def notify_supervisor_request(self, requester: Dict[str, Any]) -> List[str]:
        name = display_name(requester)
        message = f"{name} ({requester.get('email')}) has requested supervisor access"
        return self.notify_all_supervisors(requester, "supervisor_request", message, additional_data={
            "requester_id": requester["id"],
            "requester_name": name,
            "requester_email": requester.get("email"),
            "request_status": "pending",
        })

    def resolve_supervisor_request(self, notification_id: str, action: str,
                                   resolver: Dict[str, Any]) -> Dict[str, Any]:
        """Approve or deny a pending supervisor request.

        Acting on a request that is no longer pending is rejected, so a
        second click (or a second supervisor) can never promote twice.
        """
        if resolver.get("role") != "supervisor":
            raise PermissionDeniedError("Only supervisors can process supervisor requests")
        if action not in ("approve", "deny"):
            raise ValidationError("Action must be 'approve' or 'deny'")
        notification = self.store.get(NOTIFICATIONS, notification_id)
        if not notification:
            raise NotFoundError("Notification not found")
        if notification.get("type") != "supervisor_request":
            raise ValidationError("Notification is not a supervisor request")
        data = notification.get("additional_data") or {}
        requester_id = data.get("requester_id") or notification["sender_id"]
        requester = self.store.get(USERS, requester_id)
        if not requester:
            raise NotFoundError("Requesting user not found")
        if data.get("request_status") != "pending" or requester.get("supervisor_request_status") != "pending":
            raise ValidationError("Supervisor request has already been processed")

        approved = action == "approve"
        outcome = "approved" if approved else "denied"
        now = utcnow()
        if approved:
            fields = {
                "role": "supervisor",
                "supervisor_request_status": "approved",
                "role_updated_at": now,
                "role_updated_by": resolver["id"],
                "updated_at": now,
            }
        else:
            fields = {
                "supervisor_request_status": "denied",
                "supervisor_request_processed_at": now,
                "supervisor_request_processed_by": resolver["id"],
                "updated_at": now,
            }
        # Only one resolver can move the request out of pending
        if not self.store.update(USERS, requester_id, fields, where={"supervisor_request_status": "pending"}):
            raise ValidationError("Supervisor request has already been processed")

        # Every supervisor got a copy of the request; close them all
        self.store.update_where(NOTIFICATIONS, {
            "type": "supervisor_request",
            "additional_data.requester_id": requester_id,
            "additional_data.request_status": "pending",
        }, {
            "additional_data.request_status": outcome,
            "additional_data.processed_by": resolver["id"],
            "additional_data.processed_at": now,
        })
        self.store.update(NOTIFICATIONS, notification_id, {"read": True})
        logger.info("Supervisor request of %s %s by %s", requester_id, outcome, resolver["id"])

        resolver_name = display_name(resolver)
        self.notify(
            requester_id,
            "supervisor" if approved else "apprentice",
            resolver,
            "supervisor_request_result",
            f"Your request for supervisor access has been {outcome} by {resolver_name}",
        )
        return {
            "success": True,
            "action": action,
            "message": "User promoted to supervisor" if approved else "Request denied",
        }

    def list_for(self, user: Dict[str, Any], limit: int = 50, unread_only: bool = False) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {"recipient_id": user["id"]}
        if unread_only:
            filters["read"] = False
        return self.store.query(NOTIFICATIONS, filters, order_by="created_at", descending=True, limit=limit)

    def mark_read(self, notification_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        notification = self.store.get(NOTIFICATIONS, notification_id)
        if not notification:
            raise NotFoundError("Notification not found")
        if notification["recipient_id"] != user["id"]:
            raise PermissionDeniedError("Not your notification")
        if not notification.get("read"):
            self.store.update(NOTIFICATIONS, notification_id, {"read": True})
            notification["read"] = True
        return notification

    def mark_all_read(self, user: Dict[str, Any]) -> int:
        return self.store.update_where(NOTIFICATIONS, {"recipient_id": user["id"], "read": False}, {"read": True})
