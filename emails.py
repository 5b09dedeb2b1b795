"""
Email dispatch

Turns notification documents into emails and sends the supervisors'
review digests. Sending is best effort throughout: failures are recorded
on the notification document and logged, never raised to whoever caused
the notification.
"""
import logging
import smtplib
from datetime import date, datetime
from email.message import EmailMessage
from email.utils import make_msgid
from html import escape
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from config import EmailConfig
from database import DocumentStore, utcnow
from errors import NotFoundError, TransportError, UnauthenticatedError, ValidationError
from notifications import SYSTEM_SENDER, display_name
from schemas import GOALS, NOTIFICATIONS, REMINDER_LOGS, USERS, ReminderGoal, ReminderLog

logger = logging.getLogger(__name__)

BRAND_COLOR = "#0033A1"
URGENCY_STYLES = {
    "urgent": {"color": "#d32f2f", "background": "#fdecea", "label": "Urgent"},
    "important": {"color": "#ed6c02", "background": "#fff4e5", "label": "Important"},
    "info": {"color": BRAND_COLOR, "background": "#e8f0fe", "label": "Reminder"},
}


class DispatchResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


# ---------- transport ----------

class SmtpTransport:
    def __init__(self, config: EmailConfig):
        self.config = config

    def send(self, to: str, subject: str, html: str) -> str:
        msg = EmailMessage()
        msg["From"] = self.config.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")
        try:
            if self.config.secure:
                server = smtplib.SMTP_SSL(self.config.host, self.config.port, timeout=30)
            else:
                server = smtplib.SMTP(self.config.host, self.config.port, timeout=30)
            with server:
                if not self.config.secure:
                    server.ehlo()
                    if server.has_extn("starttls"):
                        server.starttls()
                        server.ehlo()
                if self.config.user:
                    server.login(self.config.user, self.config.password or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(str(e) or e.__class__.__name__)
        logger.info("Email sent to %s: %s", to, msg["Message-ID"])
        return msg["Message-ID"]


# ---------- templates ----------

def action_url(notification: Dict[str, Any], config: EmailConfig) -> str:
    if notification.get("goal_id"):
        return config.link(f"/goals/{notification['goal_id']}")
    kind = notification.get("type")
    if kind == "goal_reminder":
        return config.link("/goals/create")
    if kind == "supervisor_request_result":
        return config.link("/profile")
    if kind == "supervisor_request":
        return config.link("/notifications")
    return config.app_url


def _layout(body: str, config: EmailConfig) -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; border: 1px solid #eee; border-radius: 5px;">
      <div style="text-align: center; margin-bottom: 20px;">
        <h1 style="color: {BRAND_COLOR};">{escape(config.from_name)}</h1>
      </div>
      {body}
      <div style="margin-top: 30px; font-size: 12px; color: #999; text-align: center;">
        <p>If you don't want to receive these emails anymore, you can disable email notifications in your profile settings.</p>
      </div>
    </div>
    """


def _button(url: str, label: str) -> str:
    return (f'<a href="{escape(url)}" style="background-color: {BRAND_COLOR}; color: white; '
            f'padding: 10px 20px; text-decoration: none; border-radius: 4px; display: inline-block;">'
            f'{escape(label)}</a>')


def render_notification_email(notification: Dict[str, Any], config: EmailConfig) -> str:
    lines = [
        f'<h2 style="color: #333;">{escape(notification.get("message", ""))}</h2>',
        f'<p style="color: #666; line-height: 1.5;">You have a new notification in your {escape(config.from_name)} account.</p>',
    ]
    if notification.get("goal_title"):
        lines.append(f'<p style="color: #666; line-height: 1.5;"><strong>Goal:</strong> {escape(notification["goal_title"])}</p>')
    sender = notification.get("sender_name")
    if sender and sender != SYSTEM_SENDER["name"]:
        lines.append(f'<p style="color: #666; line-height: 1.5;"><strong>From:</strong> {escape(sender)}</p>')
    body = (f'<div style="margin-bottom: 20px;">{"".join(lines)}</div>'
            f'<div style="margin-top: 30px; text-align: center;">'
            f'{_button(action_url(notification, config), f"View in {config.from_name}")}</div>')
    return _layout(body, config)


def next_deadline(today: date, deadline: str) -> date:
    month, day = (int(p) for p in deadline.split("-"))
    for year in (today.year, today.year + 1):
        try:
            candidate = date(year, month, day)
        except ValueError:
            # 02-29 outside a leap year
            candidate = date(year, 2, 28)
        if candidate >= today:
            return candidate
    return candidate


def days_until_deadline(today: date, deadline: str) -> int:
    return (next_deadline(today, deadline) - today).days


def urgency_for(days_remaining: int) -> str:
    if days_remaining <= 7:
        return "urgent"
    if days_remaining <= 14:
        return "important"
    return "info"


def _fmt_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%B %d, %Y")
    return "N/A"


def render_digest_email(recipient_name: str, goals: Iterable[Dict[str, Any]], days_remaining: int,
                        config: EmailConfig) -> str:
    goals = list(goals)
    style = URGENCY_STYLES[urgency_for(days_remaining)]
    banner = (f'<div style="background: {style["background"]}; color: {style["color"]}; padding: 12px; '
              f'border-radius: 4px; margin-bottom: 20px;"><strong>{style["label"]}:</strong> '
              f'{days_remaining} days left until the review deadline.</div>')
    rows = []
    for g in goals:
        link = config.link(f"/review/{g['id']}") if g.get("id") else config.app_url
        rows.append(
            "<tr>"
            f'<td style="padding: 8px; border-bottom: 1px solid #eee;">{escape(g.get("title", ""))}</td>'
            f'<td style="padding: 8px; border-bottom: 1px solid #eee;">{escape(g.get("apprentice_name") or "")}</td>'
            f'<td style="padding: 8px; border-bottom: 1px solid #eee;">{_fmt_date(g.get("submitted_at"))}</td>'
            f'<td style="padding: 8px; border-bottom: 1px solid #eee;"><a href="{escape(link)}">Review</a></td>'
            "</tr>"
        )
    body = (
        f'<h2 style="color: #333;">Hello {escape(recipient_name)},</h2>'
        f"{banner}"
        f'<p style="color: #666; line-height: 1.5;">{len(goals)} goal(s) are waiting for your review:</p>'
        '<table style="width: 100%; border-collapse: collapse;">'
        '<tr><th align="left">Goal</th><th align="left">Apprentice</th><th align="left">Submitted</th><th></th></tr>'
        f'{"".join(rows)}</table>'
        f'<div style="margin-top: 30px; text-align: center;">{_button(config.app_url, "Open dashboard")}</div>'
    )
    return _layout(body, config)


def digest_subject(goal_count: int, days_remaining: int) -> str:
    prefix = {"urgent": "URGENT: ", "important": "Important: ", "info": ""}[urgency_for(days_remaining)]
    return f"{prefix}{goal_count} goal(s) waiting for your review"


# ---------- dispatcher ----------

class EmailDispatcher:
    def __init__(self, store: DocumentStore, transport, config: EmailConfig):
        self.store = store
        self.transport = transport
        self.config = config

    def _send(self, to: str, subject: str, html: str) -> DispatchResult:
        try:
            message_id = self.transport.send(to, subject, html)
        except TransportError as e:
            logger.error("Error sending email to %s: %s", to, e.message)
            return DispatchResult(success=False, error=e.message)
        return DispatchResult(success=True, message_id=message_id)

    def send_test_email(self, email: Optional[str]) -> DispatchResult:
        if not email:
            raise ValidationError("Email is required")
        return self._send(
            email,
            f"Test Email from {self.config.from_name}",
            "<h1>This is a test email</h1><p>If you received this, your email notification system is working!</p>",
        )

    def process_notification(self, notification_id: str) -> DispatchResult:
        notification = self.store.get(NOTIFICATIONS, notification_id)
        if not notification:
            raise NotFoundError("Notification not found")
        recipient = self.store.get(USERS, notification["recipient_id"])
        if not recipient:
            logger.error("User %s not found", notification["recipient_id"])
            return DispatchResult(success=False, error="User not found")
        if recipient.get("email_notifications") is False:
            logger.info("User %s has disabled email notifications", recipient["id"])
            return DispatchResult(success=False, skipped=True, error="Email notifications disabled")

        html = render_notification_email(notification, self.config)
        result = self._send(recipient["email"], f"{self.config.from_name}: {notification['message']}", html)
        try:
            self.store.update(NOTIFICATIONS, notification_id, {
                "email_sent": result.success,
                "email_sent_at": utcnow(),
                "email_error": None if result.success else result.error,
            })
        except Exception:
            logger.exception("Could not record email status on notification %s", notification_id)
        logger.info("Email notification %s for notification %s",
                    "sent" if result.success else "failed", notification_id)
        return result

    def on_notification_created(self, notification_id: str) -> None:
        try:
            self.process_notification(notification_id)
        except Exception:
            logger.exception("Error processing notification %s", notification_id)

    def _log_reminder(self, kind: str, email: str, name: str, supervisor_id: Optional[str],
                      goal_count: int, days_remaining: int) -> str:
        entry = ReminderLog(
            type=kind,
            recipient_email=email,
            recipient_name=name,
            supervisor_id=supervisor_id,
            goal_count=goal_count,
            days_remaining=days_remaining,
            sent_at=utcnow(),
        )
        return self.store.add(REMINDER_LOGS, entry.model_dump())

    def run_weekly_reminders(self, today: Optional[date] = None) -> Dict[str, int]:
        today = today or utcnow().date()
        days = days_until_deadline(today, self.config.review_deadline)
        pending = self.store.query(GOALS, {"submitted": True, "approved": False}, order_by="submitted_at")
        supervisors = self.store.query(USERS, {"role": "supervisor"})
        summary = {"supervisors": len(supervisors), "goals": len(pending), "sent": 0, "failed": 0, "skipped": 0}
        if not pending:
            logger.info("No goals waiting for review, no reminders sent")
            return summary

        subject = digest_subject(len(pending), days)
        for supervisor in supervisors:
            if supervisor.get("email_notifications") is False:
                summary["skipped"] += 1
                continue
            name = display_name(supervisor)
            self._log_reminder("weekly_goal_review_reminder", supervisor["email"], name,
                               supervisor["id"], len(pending), days)
            result = self._send(supervisor["email"], subject,
                                render_digest_email(name, pending, days, self.config))
            summary["sent" if result.success else "failed"] += 1
        logger.info("Weekly review reminders: %s", summary)
        return summary

    def send_goal_review_reminder(self, caller: Optional[Dict[str, Any]], recipient_email: Optional[str],
                                  recipient_name: Optional[str], goals: Any,
                                  supervisor_id: Optional[str] = None) -> DispatchResult:
        if not caller:
            raise UnauthenticatedError("User must be logged in")
        if not recipient_email or not isinstance(goals, list) or not goals:
            raise ValidationError("recipient_email and a non-empty goals list are required")
        try:
            parsed: List[Dict[str, Any]] = [ReminderGoal.model_validate(g).model_dump() for g in goals]
        except ValueError as e:
            raise ValidationError(f"Malformed goals: {e}")
        days = days_until_deadline(utcnow().date(), self.config.review_deadline)
        name = recipient_name or recipient_email
        self._log_reminder("manual_goal_review_reminder", recipient_email, name,
                           supervisor_id, len(parsed), days)
        result = self._send(recipient_email, digest_subject(len(parsed), days),
                            render_digest_email(name, parsed, days, self.config))
        if not result.success:
            raise TransportError(result.error or "Failed to send goal review reminder")
        return result
