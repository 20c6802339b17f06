"""Notification service for nudge reminders and completion alerts."""
import asyncio
import html
import logging
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from nudgely.config import Settings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivery collaborator: returns True when the message was accepted."""

    async def send(self, to: str, subject: str, html_content: str) -> bool: ...


def completion_url(app_url: str, token: str) -> str:
    return f"{app_url.rstrip('/')}/complete/{token}"


def html_to_text(html_content: str) -> str:
    """Plain text fallback for an HTML body."""
    plain_text = html_content.replace("<br>", "\n").replace("</p>", "\n\n")
    return re.sub(r"<[^>]+>", "", plain_text)


def send_email_notification(
    settings: Settings,
    to_email: str,
    subject: str,
    html_content: str,
) -> bool:
    """Send an email notification using SMTP."""
    if not settings.smtp_host:
        logger.warning(f"SMTP not configured, skipping email to {to_email}")
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from_email
    msg["To"] = to_email

    msg.attach(MIMEText(html_to_text(html_content), "plain"))
    msg.attach(MIMEText(html_content, "html"))

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
            server.starttls()
            if settings.smtp_user and settings.smtp_password:
                server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


class SmtpNotifier:
    """Notifier backed by SMTP; the blocking send runs in a worker thread."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def send(self, to: str, subject: str, html_content: str) -> bool:
        return await asyncio.to_thread(send_email_notification, self.settings, to, subject, html_content)


def generate_reminder_html(
    recipient_name: str,
    nudge_name: str,
    nudge_description: str | None,
    schedule_info: str,
    link: str,
    follow_up: bool = False,
) -> str:
    """Generate HTML content for a nudge reminder email.

    ``follow_up`` renders the variant sent on later days for a nudge that
    is still open.
    """
    heading = "Still Waiting On This" if follow_up else "Nudge Reminder"
    intro = "This nudge hasn't been completed yet:" if follow_up else "This is your reminder for:"
    body = f"""
    <html>
    <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h1 style="color: #1d1c1d;">{heading}</h1>
        <p>Hi {html.escape(recipient_name)},</p>
        <p>{intro}</p>
        <h2 style="color: #667eea;">{html.escape(nudge_name)}</h2>
    """

    if nudge_description:
        body += f"""
        <p style="color: #4b5563;">{html.escape(nudge_description)}</p>
        """

    body += f"""
        <p style="padding: 12px; background: #f3f4f6; border-radius: 8px; margin: 16px 0;">
            <strong>Schedule</strong><br>
            {html.escape(schedule_info)}
        </p>
        <p>
            <a href="{html.escape(link)}" style="display: inline-block; padding: 12px 24px; background: #667eea; color: #ffffff; border-radius: 6px; text-decoration: none;">Complete Nudge</a>
        </p>
        <p>If you didn't expect this reminder, you can safely ignore this email.</p>
        <p style="margin-top: 24px; padding-top: 16px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 12px;">
            The Nudgely Team
        </p>
    </body>
    </html>
    """

    return body


def generate_completion_html(
    recipient_name: str,
    nudge_name: str,
    completed_by: str,
    completed_at: str,
    comments: str | None = None,
) -> str:
    """Generate HTML content for a completion notification email."""
    body = f"""
    <html>
    <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h1 style="color: #16a34a;">Nudge Completed</h1>
        <p>Hi {html.escape(recipient_name)},</p>
        <p><strong>{html.escape(nudge_name)}</strong> was completed by {html.escape(completed_by)} on {html.escape(completed_at)}.</p>
    """

    if comments:
        body += f"""
        <p style="padding: 12px; background: #f0fdf4; border-radius: 8px;">{html.escape(comments)}</p>
        """

    body += """
        <p style="margin-top: 24px; padding-top: 16px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 12px;">
            You're receiving this because you are a recipient of this nudge.
        </p>
    </body>
    </html>
    """

    return body
