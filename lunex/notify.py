"""
Operator alerts via email and/or Slack.
"""

import smtplib
import logging
import requests
from datetime import datetime
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Optional

from lunex.config import Settings

logger = logging.getLogger(__name__)


class Alerter:
    def __init__(self, slack_webhook: Optional[str] = None, smtp_server: str = "smtp.gmail.com",
                 smtp_port: int = 587, smtp_username: Optional[str] = None,
                 smtp_password: Optional[str] = None, notification_email: Optional[str] = None):
        self.slack_webhook = slack_webhook
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.notification_email = notification_email

    @classmethod
    def from_settings(cls, settings: Settings) -> "Alerter":
        return cls(
            slack_webhook=settings.slack_webhook,
            smtp_server=settings.smtp_server,
            smtp_port=settings.smtp_port,
            smtp_username=settings.smtp_username,
            smtp_password=settings.smtp_password,
            notification_email=settings.notification_email,
        )

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_username and self.smtp_password and self.notification_email)

    def send(self, message: str, details: Optional[Dict[str, str]] = None):
        """Send alert via email and/or Slack"""
        logger.error(f"ALERT: {message}")
        details = details or {}

        # Delivery failures are logged, not raised
        if self.email_enabled:
            try:
                self._send_email_alert(message, details)
            except (smtplib.SMTPException, OSError) as e:
                logger.error(f"Failed to send email alert: {e}")

        if self.slack_webhook:
            try:
                self._send_slack_alert(message, details)
            except requests.RequestException as e:
                logger.error(f"Failed to send Slack alert: {e}")

    def _send_email_alert(self, message: str, details: Dict[str, str]):
        msg = MIMEMultipart()
        msg['From'] = self.smtp_username
        msg['To'] = self.notification_email
        msg['Subject'] = "Lunex Deployment Alert"

        lines = [
            "Lunex Deployment Alert",
            "",
            f"Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Message: {message}",
        ]
        if details:
            lines.append("")
            lines.extend(f"- {key}: {value}" for key, value in details.items())
        msg.attach(MIMEText("\n".join(lines), 'plain'))

        server = smtplib.SMTP(self.smtp_server, self.smtp_port)
        try:
            server.starttls()
            server.login(self.smtp_username, self.smtp_password)
            server.send_message(msg)
        finally:
            server.quit()

    def _send_slack_alert(self, message: str, details: Dict[str, str]):
        payload = {
            "text": f"Lunex Deployment Alert: {message}",
            "attachments": [
                {
                    "fields": [
                        {"title": key, "value": str(value), "short": True}
                        for key, value in details.items()
                    ]
                }
            ]
        }
        response = requests.post(self.slack_webhook, json=payload, timeout=10)
        response.raise_for_status()
