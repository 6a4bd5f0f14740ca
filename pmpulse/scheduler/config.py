"""
Scheduler and alert channel configuration.
Loaded from config/scheduler.yaml, falling back to environment variables.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from decouple import config as env_config, Csv

# Default location of scheduler.yaml (project root /config)
BASE_DIR = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / 'config' / 'scheduler.yaml'

_ENV_PATTERN = re.compile(r'\$\{([^}]+)\}')


def _get_config_value(key: str, default: Any = None, cast: Any = None) -> Any:
    """Read a setting from the environment or .env file."""
    if cast is None:
        return env_config(key, default=default)
    return env_config(key, default=default, cast=cast)


def _resolve_env(value: Any) -> Any:
    """Resolve ${VAR_NAME} references in string values."""
    if not isinstance(value, str):
        return value
    return _ENV_PATTERN.sub(lambda m: str(_get_config_value(m.group(1), default='')), value)


@dataclass
class SlackConfig:
    """Slack alert configuration."""
    enabled: bool = False
    webhook_url: str = ''
    channel: str = '#pmpulse-alerts'
    username: str = 'PMPulse Sync'

    def __repr__(self) -> str:
        return f"SlackConfig(enabled={self.enabled}, channel={self.channel!r})"


@dataclass
class EmailConfig:
    """Email alert configuration."""
    enabled: bool = False
    smtp_host: str = ''
    smtp_port: int = 587
    smtp_user: str = ''
    smtp_password: str = ''
    from_address: str = ''
    to_addresses: List[str] = field(default_factory=list)

    def __repr__(self) -> str:
        return (f"EmailConfig(enabled={self.enabled}, smtp_host={self.smtp_host!r}, "
                f"to_addresses={self.to_addresses!r})")


@dataclass
class WebhookConfig:
    """Generic JSON webhook configuration."""
    enabled: bool = False
    url: str = ''
    headers: Dict[str, str] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"WebhookConfig(enabled={self.enabled})"


@dataclass
class AlertsConfig:
    """Alert channels configuration."""
    slack: SlackConfig = field(default_factory=SlackConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)


@dataclass
class SchedulerConfig:
    """
    Background job configuration.
    Can be loaded from a YAML file or environment variables.
    """
    # APScheduler settings
    timezone: str = 'UTC'
    coalesce: bool = True               # Combine missed runs
    max_instances: int = 1              # One instance per job
    misfire_grace_time: int = 3600      # Allow 1 hour late
    executor_max_workers: int = 4       # Thread pool size

    # Recurring incremental sync
    sync_cron: str = '0 */4 * * *'
    sync_enabled: bool = True
    pending_poll_seconds: int = 30      # Runs queued with sync --no-wait

    # Graceful shutdown
    wait_for_jobs: bool = True

    alerts: AlertsConfig = field(default_factory=AlertsConfig)

    @classmethod
    def from_yaml(cls, path: Optional[str] = None) -> 'SchedulerConfig':
        """
        Load configuration from a YAML file.
        Environment variables can be referenced as ${VAR_NAME}.
        Falls back to from_env() when the file does not exist.

        Args:
            path: Path to scheduler.yaml (default: config/scheduler.yaml)

        Returns:
            SchedulerConfig
        """
        config_file = Path(path) if path else DEFAULT_CONFIG_PATH
        if not config_file.exists():
            return cls.from_env()

        with open(config_file) as f:
            data = yaml.safe_load(f) or {}

        config = cls()
        sched = data.get('scheduler') or {}
        config.timezone = sched.get('timezone', config.timezone)
        if 'job_defaults' in sched:
            jd = sched['job_defaults']
            config.coalesce = jd.get('coalesce', config.coalesce)
            config.max_instances = jd.get('max_instances', config.max_instances)
            config.misfire_grace_time = jd.get('misfire_grace_time', config.misfire_grace_time)
        if 'executor' in sched:
            config.executor_max_workers = sched['executor'].get('max_workers', config.executor_max_workers)
        if 'sync' in sched:
            config.sync_cron = _resolve_env(sched['sync'].get('cron', config.sync_cron))
            config.sync_enabled = sched['sync'].get('enabled', config.sync_enabled)
            config.pending_poll_seconds = sched['sync'].get('pending_poll_seconds', config.pending_poll_seconds)
        config.wait_for_jobs = sched.get('wait_for_jobs', config.wait_for_jobs)

        a = data.get('alerts') or {}
        if 'slack' in a:
            s = a['slack']
            config.alerts.slack = SlackConfig(
                enabled=s.get('enabled', False),
                webhook_url=_resolve_env(s.get('webhook_url', '')),
                channel=s.get('channel', '#pmpulse-alerts'),
                username=s.get('username', 'PMPulse Sync'),
            )
        if 'email' in a:
            e = a['email']
            config.alerts.email = EmailConfig(
                enabled=e.get('enabled', False),
                smtp_host=_resolve_env(e.get('smtp_host', '')),
                smtp_port=int(_resolve_env(e.get('smtp_port', 587)) or 587),
                smtp_user=_resolve_env(e.get('smtp_user', '')),
                smtp_password=_resolve_env(e.get('smtp_password', '')),
                from_address=_resolve_env(e.get('from_address', '')),
                to_addresses=[_resolve_env(addr) for addr in e.get('to_addresses', [])],
            )
        if 'webhook' in a:
            w = a['webhook']
            config.alerts.webhook = WebhookConfig(
                enabled=w.get('enabled', False),
                url=_resolve_env(w.get('url', '')),
                headers={k: _resolve_env(v) for k, v in (w.get('headers') or {}).items()},
            )

        return config

    @classmethod
    def from_env(cls) -> 'SchedulerConfig':
        """
        Load configuration from environment variables.
        Useful for simple deployments without YAML files.
        """
        config = cls()
        config.timezone = _get_config_value('SCHEDULER_TIMEZONE', default=config.timezone)
        config.executor_max_workers = _get_config_value(
            'SCHEDULER_MAX_WORKERS', default=config.executor_max_workers, cast=int
        )
        config.sync_cron = _get_config_value('SYNC_SCHEDULE_CRON', default=config.sync_cron)

        slack_url = _get_config_value('SLACK_WEBHOOK_URL', default='')
        if slack_url:
            config.alerts.slack = SlackConfig(
                enabled=True,
                webhook_url=slack_url,
                channel=_get_config_value('SLACK_CHANNEL', default='#pmpulse-alerts'),
            )

        smtp_host = _get_config_value('SMTP_HOST', default='')
        if smtp_host:
            config.alerts.email = EmailConfig(
                enabled=True,
                smtp_host=smtp_host,
                smtp_port=_get_config_value('SMTP_PORT', default=587, cast=int),
                smtp_user=_get_config_value('SMTP_USER', default=''),
                smtp_password=_get_config_value('SMTP_PASSWORD', default=''),
                from_address=_get_config_value('ALERT_FROM_ADDRESS', default=''),
                to_addresses=_get_config_value('SYNC_ALERT_RECIPIENTS', default='', cast=Csv()),
            )

        webhook_url = _get_config_value('ALERT_WEBHOOK_URL', default='')
        if webhook_url:
            config.alerts.webhook = WebhookConfig(enabled=True, url=webhook_url)

        return config
