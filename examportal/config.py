import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'examportal_secret_key_123')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///examportal.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # None lets Flask-SocketIO pick the best available server
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE') or None

    IDLE_THRESHOLD_MINUTES = 5
    DEFAULT_MAX_INCIDENTS = int(os.environ.get('DEFAULT_MAX_INCIDENTS', 5))
    DEFAULT_ENABLE_AUTO_SUSPEND = _env_bool('DEFAULT_ENABLE_AUTO_SUSPEND', False)
    DEFAULT_ADDITIONAL_INCIDENTS_AFTER_REMOVAL = 3

    CERTIFICATE_ASYNC = _env_bool('CERTIFICATE_ASYNC', True)

    SMTP_HOST = os.environ.get('SMTP_HOST')
    SMTP_PORT = os.environ.get('SMTP_PORT')
    SMTP_USER = os.environ.get('SMTP_USER')
    SMTP_PASS = os.environ.get('SMTP_PASS')
    SMTP_FROM = os.environ.get('SMTP_FROM') or SMTP_USER


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SOCKETIO_ASYNC_MODE = 'threading'
    CERTIFICATE_ASYNC = False
    SMTP_HOST = None


@dataclass(frozen=True)
class SecuritySettings:
    """Proctoring thresholds that apply to one student.

    Resolved per request from the student's batch so that batches with
    different thresholds never share state.
    """

    max_incidents: int
    enable_auto_suspend: bool
    additional_incidents_after_removal: int
    source: str = 'batch'


def resolve_security_settings(batch, config, settings_lookup=None) -> SecuritySettings:
    """Batch values win; without a batch fall back to Setting rows, then config."""
    if batch is not None:
        return SecuritySettings(
            max_incidents=int(batch.max_security_incidents),
            enable_auto_suspend=bool(batch.enable_auto_suspend),
            additional_incidents_after_removal=int(batch.additional_security_incidents_after_removal),
        )

    max_incidents: Optional[int] = None
    enable_auto_suspend: Optional[bool] = None
    if settings_lookup is not None:
        raw_max = settings_lookup('security.maxIncidents')
        if raw_max is not None:
            try:
                max_incidents = int(raw_max)
            except (TypeError, ValueError):
                max_incidents = None
        raw_enable = settings_lookup('security.enableAutoSuspend')
        if raw_enable is not None:
            enable_auto_suspend = raw_enable is True or str(raw_enable).lower() == 'true'

    return SecuritySettings(
        max_incidents=max_incidents if max_incidents is not None else int(config['DEFAULT_MAX_INCIDENTS']),
        enable_auto_suspend=(
            enable_auto_suspend if enable_auto_suspend is not None
            else bool(config['DEFAULT_ENABLE_AUTO_SUSPEND'])
        ),
        additional_incidents_after_removal=int(config['DEFAULT_ADDITIONAL_INCIDENTS_AFTER_REMOVAL']),
        source='global',
    )
