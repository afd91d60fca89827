# filename: config.py

import logging
import os
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# system_settings column -> DeliverySettings field
SYSTEM_SETTINGS_FIELDS = {
    'smtp_host': 'smtp_host',
    'smtp_port': 'smtp_port',
    'smtp_user': 'smtp_user',
    'smtp_password': 'smtp_password',
    'contact_email': 'from_address',
    'website_url': 'website_url',
    'email_hourly_cap': 'hourly_cap',
    'email_batch_size': 'batch_size',
    'email_batch_interval_seconds': 'batch_interval_seconds',
    'email_max_retries': 'max_retries',
}

# environment variable -> DeliverySettings field
ENVIRONMENT_FIELDS = {
    'EMAIL_SERVER_HOST': 'smtp_host',
    'EMAIL_SERVER_PORT': 'smtp_port',
    'EMAIL_SERVER_USER': 'smtp_user',
    'EMAIL_SERVER_PASSWORD': 'smtp_password',
    'EMAIL_FROM': 'from_address',
    'EMAIL_FROM_NAME': 'from_name',
    'NEXT_PUBLIC_WEBSITE_URL': 'website_url',
    'EMAIL_HOURLY_CAP': 'hourly_cap',
    'EMAIL_QUOTA_WINDOW_SECONDS': 'window_seconds',
    'EMAIL_BATCH_SIZE': 'batch_size',
    'EMAIL_BATCH_INTERVAL_SECONDS': 'batch_interval_seconds',
    'EMAIL_MAX_BATCH_COUNT': 'max_batch_count',
    'EMAIL_MAX_RETRIES': 'max_retries',
    'EMAIL_MAX_CAMPAIGNS_PER_USER': 'max_campaigns_per_user_window',
    'EMAIL_SMTP_RATE_PER_SECOND': 'smtp_rate_per_second',
    'EMAIL_STUCK_SENDING_MINUTES': 'stuck_sending_minutes',
    'EMAIL_TRACK_CLICKS': 'track_clicks',
    'EMAIL_NAME_FALLBACK': 'name_fallback',
    'EMAIL_RECURRING_TIMEZONE': 'recurring_timezone',
    'CRON_SECRET': 'cron_secret',
    'ADMIN_API_TOKEN': 'admin_api_token',
}


class DeliverySettings(BaseModel):
    """Runtime settings; environment defaults overridden by the admin settings row"""
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    from_address: Optional[str] = None
    from_name: str = 'Contact Tables'
    website_url: str = 'https://contact-tables.com'

    hourly_cap: int = 200
    window_seconds: int = 60 * 60
    batch_size: int = 200
    batch_interval_seconds: int = 60 * 60
    max_batch_count: int = 10
    max_retries: int = 3
    max_per_invocation: int = 200
    max_campaigns_per_user_window: int = 200
    smtp_rate_per_second: float = 5.0
    smtp_timeout_seconds: int = 30
    stuck_sending_minutes: int = 30

    track_clicks: bool = True
    name_fallback: str = 'Kunde'
    recurring_timezone: str = 'Europe/Berlin'

    cron_secret: Optional[str] = None
    admin_api_token: Optional[str] = None

    def missing_smtp_fields(self) -> List[str]:
        fields = ['smtp_host', 'smtp_port', 'smtp_user', 'smtp_password', 'from_address']
        return [name for name in fields if not getattr(self, name)]

    def require_smtp(self) -> None:
        missing = self.missing_smtp_fields()
        if missing:
            raise ConfigurationError(
                f"SMTP configuration incomplete ({', '.join(missing)}). Please set in admin settings."
            )

    @property
    def base_url(self) -> str:
        return self.website_url.rstrip('/')

    def with_overrides(self, overrides: Dict[str, Any],
                       source: str = 'overrides') -> 'DeliverySettings':
        """Copy with every non-empty override applied"""
        values = self.model_dump()
        values.update({key: value for key, value in overrides.items()
                       if value is not None and value != ''})
        return _validated(values, source)


def _validated(values: Dict[str, Any], source: str) -> DeliverySettings:
    try:
        return DeliverySettings.model_validate(values)
    except ValidationError as e:
        fields = ', '.join(str(err['loc'][0]) for err in e.errors() if err.get('loc'))
        raise ConfigurationError(f"Invalid delivery settings in {source}: {fields}") from e


def load_root_env() -> bool:
    """Load environment variables from the .env file in the working directory"""
    env_path = os.path.join(os.getcwd(), '.env')
    if not os.path.exists(env_path):
        logger.debug(f"No .env file at {env_path}, using process environment")
        return False
    load_dotenv(dotenv_path=env_path, override=False)
    logger.info(f"Loaded environment from {env_path}")
    return True


def settings_from_env(environ: Optional[Dict[str, str]] = None) -> DeliverySettings:
    environ = os.environ if environ is None else environ
    values = {}
    for env_name, field in ENVIRONMENT_FIELDS.items():
        value = environ.get(env_name)
        if value is not None and value != '':
            values[field] = value
    return _validated(values, 'environment')


def load_settings(store=None, environ: Optional[Dict[str, str]] = None) -> DeliverySettings:
    """
    Build the effective settings. The system_settings row takes precedence
    over the environment; a store that cannot be read leaves env values in place.
    """
    settings = settings_from_env(environ)
    if store is None:
        return settings

    try:
        row = store.get_system_settings() or {}
    except Exception as e:
        logger.error(f"Error loading system settings, using environment defaults: {str(e)}")
        return settings

    overrides = {field: row.get(column) for column, field in SYSTEM_SETTINGS_FIELDS.items()}
    return settings.with_overrides(overrides, source='system_settings')
