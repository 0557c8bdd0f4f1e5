"""
Job report delivery.

The finalized JobResult is rendered into a plain-text and an HTML body and
mailed to the configured recipients, with the run log attached.
"""

import logging
import os
import smtplib
from abc import ABC, abstractmethod
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Iterable, List, Optional

from rotator.utils.crypto import resolve_secret
from .result import JobResult, Status

logger = logging.getLogger(__name__)

STATE_COLORS = {
    Status.SUCCESSFUL: '#36a64f',
    Status.WARNING: '#ff9500',
    Status.ERROR: '#ff0000',
}


class NotificationError(Exception):
    """Raised when a report cannot be delivered."""
    pass


class Notifier(ABC):

    @abstractmethod
    def send(self, report: JobResult, attachments: Optional[Iterable[str]] = None):
        """Deliver a finalized report. Raises NotificationError."""


def report_subject(report: JobResult, tool_name: str = 'rotator') -> str:
    return f"[{tool_name}] {report.state.value}: {report.set_name or 'backup'} on {report.host_id}"


def _report_fields(report: JobResult):
    return [
        ('Host', report.host_id),
        ('Backup set', report.set_name),
        ('Tier', report.tier.value if report.tier else None),
        ('Backup type', report.backup_type),
        ('State', report.state.value),
        ('Started', report.started_at),
        ('Completed', report.completed_at),
        ('Engine result code', report.engine_result_code),
        ('Engine started', report.engine_started_at),
        ('Engine ended', report.engine_ended_at),
        ('Artifact', report.artifact),
        ('Failure log', report.failure_log),
        ('Compression', report.compression.value),
        ('Synchronization', report.synchronization.value),
        ('Mirror log', report.mirror_log),
        ('Removed sets', ', '.join(report.removed_sets) or 'none'),
        ('Configuration', report.config_path),
        ('Log file', report.log_path),
    ]


def render_text(report: JobResult) -> str:
    """Plain-text report body."""
    lines = [f"{label}: {value if value is not None else '-'}" for label, value in _report_fields(report)]
    lines.append('')
    lines.append('Messages:')
    lines.extend(report.messages)
    return '\n'.join(lines)


def render_html(report: JobResult) -> str:
    """HTML report body."""
    color = STATE_COLORS.get(report.state, '#666666')

    rows = ''.join(
        f"<tr><td><strong>{escape(label)}</strong></td>"
        f"<td>{escape(str(value)) if value is not None else '-'}</td></tr>"
        for label, value in _report_fields(report)
    )
    messages = '<br>'.join(escape(message) for message in report.messages)

    return f"""
    <html>
    <head>
        <style>
            body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
            .state {{ border-left: 5px solid {color}; padding: 10px 20px; color: {color}; font-size: 20px; font-weight: bold; }}
            table {{ border-collapse: collapse; margin: 15px 0; }}
            td {{ padding: 4px 12px; border-bottom: 1px solid #eee; font-size: 14px; }}
            .messages {{ font-family: monospace; font-size: 12px; background-color: #f8f9fa; padding: 10px; }}
        </style>
    </head>
    <body>
        <div class="state">{escape(report.state.value)}</div>
        <table>{rows}</table>
        <div class="messages">{messages}</div>
    </body>
    </html>
    """


class EmailNotifier(Notifier):
    """Sends reports over SMTP."""

    def __init__(
        self,
        smtp_server: str,
        smtp_port: int = 587,
        from_email: Optional[str] = None,
        to_emails: Optional[List[str]] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        tool_name: str = 'rotator'
    ):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.from_email = from_email
        self.to_emails = list(to_emails or [])
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.tool_name = tool_name

    def build_message(self, report: JobResult, attachments: Optional[Iterable[str]] = None) -> MIMEMultipart:
        msg = MIMEMultipart('mixed')
        msg['From'] = self.from_email
        msg['To'] = ', '.join(self.to_emails)
        msg['Subject'] = report_subject(report, self.tool_name)

        body = MIMEMultipart('alternative')
        body.attach(MIMEText(render_text(report), 'plain', 'utf-8'))
        body.attach(MIMEText(render_html(report), 'html', 'utf-8'))
        msg.attach(body)

        for path in attachments or []:
            if not path or not os.path.isfile(path):
                continue
            with open(path, 'rb') as f:
                part = MIMEApplication(f.read(), Name=os.path.basename(path))
            part['Content-Disposition'] = f'attachment; filename="{os.path.basename(path)}"'
            msg.attach(part)

        return msg

    def send(self, report: JobResult, attachments: Optional[Iterable[str]] = None):
        if not self.smtp_server or not self.from_email or not self.to_emails:
            raise NotificationError("SMTP server, sender and recipients must be configured")

        try:
            msg = self.build_message(report, attachments)

            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=60) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password or '')
                server.send_message(msg)

        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to send report to {', '.join(self.to_emails)}: {e}") from e

        logger.info(f"Report sent to {', '.join(self.to_emails)}")


def create_notifier(settings) -> EmailNotifier:
    """Factory function to create the report notifier from settings."""
    return EmailNotifier(
        smtp_server=settings.get('SMTP_SERVER'),
        smtp_port=settings.get('SMTP_PORT', 587),
        from_email=settings.get('MAIL_FROM'),
        to_emails=settings.get('MAIL_TO') or [],
        username=settings.get('SMTP_USERNAME'),
        password=resolve_secret(settings, 'SMTP_PASSWORD'),
        use_tls=settings.get('SMTP_USE_TLS', True),
        tool_name=settings.get('TOOL_NAME', 'rotator'),
    )
