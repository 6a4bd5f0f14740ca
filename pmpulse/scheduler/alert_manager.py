"""
Alert Manager - Send sync failure notifications via Slack, email, or webhooks.
"""

import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import requests

from pmpulse.common.date_utils import utc_now
from pmpulse.scheduler.config import AlertsConfig, EmailConfig, SlackConfig, WebhookConfig

logger = logging.getLogger(__name__)


@dataclass
class AlertContext:
    """Context for alert messages."""
    connection: str
    status: str
    consecutive_failures: int
    sync_run_id: Optional[int] = None
    mode: Optional[str] = None
    error_message: Optional[str] = None
    recent_failures: List[Dict[str, Any]] = field(default_factory=list)
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for template formatting."""
        return {
            'connection': self.connection,
            'status': self.status,
            'consecutive_failures': self.consecutive_failures,
            'sync_run_id': self.sync_run_id if self.sync_run_id is not None else 'N/A',
            'mode': self.mode or 'N/A',
            'error_message': self.error_message or 'Unknown error',
            'timestamp': self.timestamp.strftime('%Y-%m-%d %H:%M:%S'),
        }


class AlertChannel(ABC):
    """A destination for failure alerts. send() returns True once delivered."""

    @abstractmethod
    def send(self, context: AlertContext, message: str) -> bool:
        ...

    @abstractmethod
    def is_configured(self) -> bool:
        ...


class SlackAlertChannel(AlertChannel):
    """Slack webhook alert channel."""

    def __init__(self, config: SlackConfig):
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.enabled and self.config.webhook_url)

    def send(self, context: AlertContext, message: str) -> bool:
        """Send Slack alert."""
        if not self.is_configured():
            return False

        payload = {
            'username': self.config.username,
            'channel': self.config.channel,
            'attachments': [{
                'color': 'danger' if context.status == 'failed' else '#808080',
                'title': f"AppFolio sync failing: {context.connection}",
                'text': message,
                'fields': [
                    {'title': 'Consecutive failures', 'value': str(context.consecutive_failures), 'short': True},
                    {'title': 'Last run', 'value': str(context.sync_run_id), 'short': True},
                ],
                'ts': int(context.timestamp.timestamp()),
            }]
        }

        try:
            response = requests.post(self.config.webhook_url, json=payload, timeout=30)
        except requests.RequestException as e:
            logger.error(f"Slack alert error: {e}")
            return False

        if response.status_code == 200:
            logger.info(f"Slack alert sent for {context.connection}")
            return True
        logger.error(f"Slack alert failed: {response.status_code} - {response.text}")
        return False


class EmailAlertChannel(AlertChannel):
    """Email SMTP alert channel."""

    def __init__(self, config: EmailConfig, recipients: Optional[List[str]] = None):
        """
        Initialize email channel.

        Args:
            config: Email configuration
            recipients: Addresses used when the config lists none
        """
        self.config = config
        self.to_addresses = [a.strip() for a in (config.to_addresses or recipients or []) if a.strip()]

    def is_configured(self) -> bool:
        return bool(self.config.enabled and self.config.smtp_host and self.to_addresses)

    def send(self, context: AlertContext, message: str) -> bool:
        """Send email alert."""
        if not self.is_configured():
            return False

        msg = MIMEMultipart()
        msg['From'] = self.config.from_address
        msg['To'] = ', '.join(self.to_addresses)
        msg['Subject'] = (
            f"[PMPulse] AppFolio sync has failed {context.consecutive_failures} times in a row"
        )

        body = f"""
Sync Failure Alert
==================

Connection: {context.connection}
Consecutive failures: {context.consecutive_failures}
Last sync run: {context.sync_run_id} ({context.mode or 'unknown'} mode)
Timestamp: {context.timestamp}

{message}
"""
        if context.recent_failures:
            body += "\nRecent failures\n---------------\n"
            for failure in context.recent_failures[-5:]:
                body += f"- run {failure.get('sync_run_id')}: {failure.get('error')}\n"

        msg.attach(MIMEText(body, 'plain'))

        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port) as server:
                server.starttls()
                if self.config.smtp_user and self.config.smtp_password:
                    server.login(self.config.smtp_user, self.config.smtp_password)
                server.sendmail(self.config.from_address, self.to_addresses, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Email alert error: {e}")
            return False

        logger.info(f"Email alert sent for {context.connection} to {len(self.to_addresses)} recipient(s)")
        return True


class WebhookAlertChannel(AlertChannel):
    """Generic webhook alert channel."""

    def __init__(self, url: str, method: str = 'POST', headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.method = method
        self.headers = headers or {'Content-Type': 'application/json'}

    def is_configured(self) -> bool:
        return bool(self.url)

    def send(self, context: AlertContext, message: str) -> bool:
        """Send webhook alert."""
        if not self.is_configured():
            return False

        payload = {
            'event': 'sync_failure_alert',
            'connection': context.connection,
            'status': context.status,
            'sync_run_id': context.sync_run_id,
            'consecutive_failures': context.consecutive_failures,
            'timestamp': context.timestamp.isoformat(),
            'message': message,
        }
        if context.error_message:
            payload['error'] = context.error_message

        try:
            response = requests.request(
                method=self.method, url=self.url, json=payload, headers=self.headers, timeout=30
            )
        except requests.RequestException as e:
            logger.error(f"Webhook alert error: {e}")
            return False

        if response.ok:
            logger.info(f"Webhook alert sent for {context.connection}")
            return True
        logger.error(f"Webhook alert failed: {response.status_code}")
        return False


class AlertManager:
    """
    Manages alert channels and routing.

    A failure in one channel is logged and never stops the others.
    """

    TEMPLATES = {
        'sync_failure': (
            "AppFolio sync for '{connection}' has failed {consecutive_failures} consecutive times.\n"
            "Last run {sync_run_id} ({mode}) failed with: {error_message}"
        ),
    }

    def __init__(self, config: Optional[AlertsConfig] = None, recipients: Optional[List[str]] = None):
        """
        Initialize alert manager.

        Args:
            config: Alert channel configuration
            recipients: Fallback email recipients (SYNC_ALERT_RECIPIENTS)
        """
        self.config = config or AlertsConfig()
        self.channels: List[AlertChannel] = []

        if self.config.slack.enabled:
            self.channels.append(SlackAlertChannel(self.config.slack))
        if self.config.email.enabled:
            self.channels.append(EmailAlertChannel(self.config.email, recipients))
        if self.config.webhook.enabled:
            self.add_webhook(self.config.webhook)

        logger.info(f"AlertManager initialized with {len(self.channels)} channel(s)")

    def add_webhook(self, webhook: WebhookConfig):
        """Add a webhook channel."""
        self.channels.append(WebhookAlertChannel(webhook.url, headers=webhook.headers or None))

    def has_channels(self) -> bool:
        return any(channel.is_configured() for channel in self.channels)

    def send_sync_failure_alert(
        self,
        connection: str,
        consecutive_failures: int,
        sync_run_id: Optional[int] = None,
        mode: Optional[str] = None,
        error_message: Optional[str] = None,
        recent_failures: Optional[List[Dict[str, Any]]] = None
    ) -> int:
        """
        Send a repeated sync failure alert.

        Returns:
            int: Number of channels that delivered the alert
        """
        context = AlertContext(
            connection=connection,
            status='failed',
            consecutive_failures=consecutive_failures,
            sync_run_id=sync_run_id,
            mode=mode,
            error_message=error_message,
            recent_failures=list(recent_failures or []),
        )
        message = self.TEMPLATES['sync_failure'].format(**context.to_dict())
        return self._send_to_all(context, message)

    def _send_to_all(self, context: AlertContext, message: str) -> int:
        """Send alert to all configured channels."""
        delivered = 0
        for channel in self.channels:
            if not channel.is_configured():
                continue
            try:
                if channel.send(context, message):
                    delivered += 1
            except Exception as e:
                logger.error(f"Alert channel {type(channel).__name__} error: {e}")
        return delivered
