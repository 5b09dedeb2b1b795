"""
Leaderboard

Standings are computed on every read from the goal documents. A reset
does not touch any goal: it only moves the start of the scoring period,
and approvals before that instant stop counting.
"""
import logging
from typing import Any, Dict, List, Optional

from database import DocumentStore, utcnow
from errors import PermissionDeniedError
from notifications import display_name
from schemas import GOALS, LEADERBOARD_SETTINGS_ID, SETTINGS, USERS, Countdown, LeaderboardSettings

logger = logging.getLogger(__name__)


def _require_supervisor(user: Dict[str, Any], what: str) -> None:
    if user.get("role") != "supervisor":
        raise PermissionDeniedError(f"Only supervisors can {what}")


class LeaderboardService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def get_settings(self) -> Dict[str, Any]:
        doc = self.store.get(SETTINGS, LEADERBOARD_SETTINGS_ID) or {}
        return LeaderboardSettings.model_validate(doc).model_dump()

    def reset_timestamp(self):
        return self.get_settings()["leaderboard_reset_timestamp"]

    def compute(self) -> List[Dict[str, Any]]:
        reset_at = self.reset_timestamp()
        standings = []
        for apprentice in self.store.query(USERS, {"role": "apprentice"}):
            filters: Dict[str, Any] = {"apprentice_id": apprentice["id"], "approved": True}
            if reset_at is not None:
                filters["approved_at"] = {"$gte": reset_at}
            goals = self.store.query(GOALS, filters)
            total = sum(float(g.get("rating") or 0) for g in goals)
            count = len(goals)
            standings.append({
                "apprentice_id": apprentice["id"],
                "name": display_name(apprentice),
                "total_rating": total,
                "approved_goal_count": count,
                "average_rating": total / count if count else 0,
            })
        # sorted() is stable, ties keep the order the users were read in
        return sorted(standings, key=lambda s: s["total_rating"], reverse=True)

    @staticmethod
    def champion(standings: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Apprentice of the year: the leader, if anyone has scored at all"""
        if standings and standings[0]["total_rating"] > 0:
            return standings[0]
        return None

    @staticmethod
    def rank_of(standings: List[Dict[str, Any]], apprentice_id: str) -> Optional[int]:
        for position, entry in enumerate(standings, start=1):
            if entry["apprentice_id"] == apprentice_id:
                return position
        return None

    def reset(self, user: Dict[str, Any]) -> Dict[str, Any]:
        _require_supervisor(user, "reset the leaderboard")
        now = utcnow()
        self.store.set(SETTINGS, LEADERBOARD_SETTINGS_ID, {
            "leaderboard_reset_timestamp": now,
            "updated_at": now,
            "updated_by": user["id"],
        }, merge=True)
        logger.info("Leaderboard reset by %s at %s", user["id"], now.isoformat())
        return self.get_settings()

    def update_countdown(self, user: Dict[str, Any], countdown: Countdown) -> Dict[str, Any]:
        _require_supervisor(user, "change the countdown")
        self.store.set(SETTINGS, LEADERBOARD_SETTINGS_ID, {
            "countdown": countdown.model_dump(),
            "updated_at": utcnow(),
            "updated_by": user["id"],
        }, merge=True)
        return self.get_settings()

    def clear_countdown(self, user: Dict[str, Any]) -> Dict[str, Any]:
        _require_supervisor(user, "change the countdown")
        self.store.set(SETTINGS, LEADERBOARD_SETTINGS_ID, {
            "countdown": None,
            "updated_at": utcnow(),
            "updated_by": user["id"],
        }, merge=True)
        return self.get_settings()
