import asyncio
from datetime import date, datetime

import pytest
from fastapi import BackgroundTasks

from config import EmailConfig
from emails import (
    action_url, days_until_deadline, digest_subject, render_digest_email,
    render_notification_email, urgency_for,
)
from errors import NotFoundError, TransportError, UnauthenticatedError, ValidationError
from notifications import SYSTEM_SENDER
from schemas import GOALS, NOTIFICATIONS, REMINDER_LOGS, GoalCreate

CONFIG = EmailConfig(app_url="https://goals.example.com/")


class TestTemplates:
    def test_goal_link(self):
        n = {"goal_id": "g1", "type": "comment", "message": "m"}
        assert action_url(n, CONFIG) == "https://goals.example.com/goals/g1"

    @pytest.mark.parametrize("kind,path", [
        ("goal_reminder", "/goals/create"),
        ("supervisor_request_result", "/profile"),
        ("supervisor_request", "/notifications"),
    ])
    def test_links_without_goal(self, kind, path):
        assert action_url({"type": kind}, CONFIG) == "https://goals.example.com" + path

    def test_values_are_escaped(self):
        html = render_notification_email({
            "message": "<script>alert(1)</script>",
            "goal_title": "Tom & Jerry",
            "sender_name": "Ada",
            "type": "comment",
        }, CONFIG)
        assert "<script>" not in html
        assert "Tom &amp; Jerry" in html
        assert "<strong>From:</strong> Ada" in html

    def test_system_sender_is_not_shown(self):
        html = render_notification_email({
            "message": "Create goals", "sender_name": SYSTEM_SENDER["name"], "type": "goal_reminder",
        }, CONFIG)
        assert "From:" not in html

    def test_digest_lists_review_links(self):
        goals = [{"id": "g1", "title": "Rust", "apprentice_name": "Ada", "submitted_at": datetime(2026, 5, 4)}]
        html = render_digest_email("Sam", goals, 3, CONFIG)
        assert "https://goals.example.com/review/g1" in html
        assert "May 04, 2026" in html
        assert "Urgent" in html


class TestDeadline:
    def test_upcoming_this_year(self):
        assert days_until_deadline(date(2026, 12, 24), "12-31") == 7

    def test_today_is_deadline(self):
        assert days_until_deadline(date(2026, 12, 31), "12-31") == 0

    def test_rolls_to_next_year(self):
        assert days_until_deadline(date(2026, 7, 2), "07-01") == 364

    @pytest.mark.parametrize("days,level", [(0, "urgent"), (7, "urgent"), (8, "important"),
                                            (14, "important"), (15, "info")])
    def test_urgency(self, days, level):
        assert urgency_for(days) == level

    def test_subject_prefix(self):
        assert digest_subject(2, 3).startswith("URGENT")
        assert digest_subject(2, 60) == "2 goal(s) waiting for your review"


class TestNotificationDispatch:
    def test_created_notification_is_emailed(self, services, make_user, store, transport):
        user = make_user()
        nid = services.notifications.notify(user["id"], "apprentice", SYSTEM_SENDER, "goal_reminder", "Hi there")
        [mail] = transport.sent_to(user["email"])
        assert mail["subject"] == "ZielManager: Hi there"
        n = store.get(NOTIFICATIONS, nid)
        assert n["email_sent"] is True
        assert n["email_error"] is None

    def test_opted_out_user_is_skipped(self, services, make_user, store, transport):
        user = make_user(email_notifications=False)
        nid = services.notifications.notify(user["id"], "apprentice", SYSTEM_SENDER, "goal_reminder", "Hi")
        assert transport.sent == []
        assert "email_sent" not in store.get(NOTIFICATIONS, nid)

    def test_missing_preference_means_send(self, services, make_user, store, transport):
        user = make_user()
        store.collection("users").update_one({"email": user["email"]}, {"$unset": {"email_notifications": ""}})
        services.notifications.notify(user["id"], "apprentice", SYSTEM_SENDER, "goal_reminder", "Hi")
        assert len(transport.sent_to(user["email"])) == 1

    def test_transport_failure_is_recorded(self, services, make_user, store, transport):
        user = make_user()
        transport.failing.add(user["email"])
        nid = services.notifications.notify(user["id"], "apprentice", SYSTEM_SENDER, "goal_reminder", "Hi")
        n = store.get(NOTIFICATIONS, nid)
        assert n["email_sent"] is False
        assert "Mailbox unavailable" in n["email_error"]

    def test_request_scoped_mail_waits_for_background_run(self, services, make_user, store, transport):
        apprentice, supervisor = make_user(), make_user("supervisor")
        tasks = BackgroundTasks()
        scoped = services.for_request(tasks)
        goal = scoped.goals.create(apprentice, GoalCreate(title="Ship it"))

        submitted = scoped.goals.submit(goal["id"], apprentice)
        assert submitted["submitted"] is True
        assert transport.sent == []
        [n] = store.query(NOTIFICATIONS, {"recipient_id": supervisor["id"], "type": "submission"})
        assert "email_sent" not in n

        asyncio.run(tasks())
        assert len(transport.sent_to(supervisor["email"])) == 1
        assert store.get(NOTIFICATIONS, n["id"])["email_sent"] is True

    def test_unknown_recipient(self, services, store):
        nid = store.add(NOTIFICATIONS, {"recipient_id": "ghost", "message": "x", "type": "comment"})
        result = services.emails.process_notification(nid)
        assert result.success is False
        assert result.error == "User not found"

    def test_missing_notification(self, services):
        with pytest.raises(NotFoundError):
            services.emails.process_notification("0123456789abcdef01234567")


class TestWeeklyReminders:
    def pending_goal(self, store, apprentice, title):
        return store.add(GOALS, {
            "title": title, "apprentice_id": apprentice["id"], "apprentice_name": "Ada Test",
            "submitted": True, "submitted_at": datetime(2026, 10, 1), "approved": False, "rating": 0,
        })

    def test_only_opted_in_supervisors_get_digest(self, services, make_user, store, transport):
        apprentice = make_user()
        self.pending_goal(store, apprentice, "Rust")
        self.pending_goal(store, apprentice, "Go")
        store.add(GOALS, {"title": "Done", "apprentice_id": apprentice["id"], "submitted": True,
                          "approved": True, "rating": 4})
        s1 = make_user("supervisor")
        s2 = make_user("supervisor")
        s3 = make_user("supervisor", email_notifications=False)

        summary = services.emails.run_weekly_reminders(today=date(2026, 12, 20))
        assert summary == {"supervisors": 3, "goals": 2, "sent": 2, "failed": 0, "skipped": 1}

        logs = store.query(REMINDER_LOGS, {"type": "weekly_goal_review_reminder"})
        assert sorted(l["supervisor_id"] for l in logs) == sorted([s1["id"], s2["id"]])
        assert all(l["goal_count"] == 2 and l["days_remaining"] == 11 for l in logs)
        assert len(transport.sent) == 2
        assert transport.sent_to(s3["email"]) == []
        assert transport.sent[0]["subject"].startswith("Important")

    def test_failed_send_is_still_logged(self, services, make_user, store, transport):
        self.pending_goal(store, make_user(), "Rust")
        supervisor = make_user("supervisor")
        transport.failing.add(supervisor["email"])
        summary = services.emails.run_weekly_reminders(today=date(2026, 1, 5))
        assert summary["failed"] == 1
        assert store.count(REMINDER_LOGS) == 1

    def test_nothing_pending_sends_nothing(self, services, make_user, store, transport):
        make_user("supervisor")
        summary = services.emails.run_weekly_reminders(today=date(2026, 1, 5))
        assert summary["sent"] == 0
        assert store.count(REMINDER_LOGS) == 0
        assert transport.sent == []


class TestManualReminder:
    def test_sends_and_logs(self, services, make_user, store, transport):
        caller = make_user("supervisor")
        result = services.emails.send_goal_review_reminder(
            caller, "boss@example.com", "Boss", [{"id": "g1", "title": "Rust", "apprentice_name": "Ada"}])
        assert result.success is True
        [log] = store.query(REMINDER_LOGS)
        assert log["type"] == "manual_goal_review_reminder"
        assert log["goal_count"] == 1
        assert len(transport.sent_to("boss@example.com")) == 1

    def test_send_failure_raises_after_logging(self, services, make_user, store, transport):
        transport.failing.add("boss@example.com")
        with pytest.raises(TransportError):
            services.emails.send_goal_review_reminder(
                make_user("supervisor"), "boss@example.com", "Boss", [{"title": "Rust"}])
        [log] = store.query(REMINDER_LOGS)
        assert log["recipient_email"] == "boss@example.com"

    @pytest.mark.parametrize("email,goals", [(None, [{"title": "x"}]), ("a@b.c", []),
                                             ("a@b.c", "nope"), ("a@b.c", [{"no_title": 1}])])
    def test_rejects_bad_arguments(self, services, make_user, email, goals):
        with pytest.raises(ValidationError):
            services.emails.send_goal_review_reminder(make_user(), email, "X", goals)

    def test_requires_caller(self, services):
        with pytest.raises(UnauthenticatedError):
            services.emails.send_goal_review_reminder(None, "a@b.c", "X", [{"title": "x"}])
