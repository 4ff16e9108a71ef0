import os
import tomllib
from dataclasses import dataclass, fields
from datetime import timedelta

from termcal.core.errors import ConfigError

# API Configuration
SCOPES = ['https://www.googleapis.com/auth/calendar.readonly']
TOKEN_FILE = os.path.join('config', 'token.json')
CREDENTIALS_FILE = os.path.join('config', 'credentials.json')
DEFAULT_CALENDAR_ID = 'primary'
API_MAX_RESULTS = 250
GOOGLE_TOKEN_URI = 'https://oauth2.googleapis.com/token'
GOOGLE_AUTH_URI = 'https://accounts.google.com/o/oauth2/auth'

# Microsoft Graph
OUTLOOK_SCOPES = ['offline_access', 'https://graph.microsoft.com/Calendars.ReadBasic']
OUTLOOK_DEFAULT_TENANT = 'common'
OUTLOOK_LOGIN_URL = 'https://login.microsoftonline.com'
GRAPH_BASE_URL = 'https://graph.microsoft.com/v1.0'

CONFIG_ENV_VAR = 'TERMCAL_CONFIG'
DEFAULT_CONFIG_PATH = os.path.join('~', '.config', 'termcal', 'config.toml')

PROVIDERS = ('google', 'outlook')
MULTIPLEXERS = ('auto', 'zellij', 'tmux', 'none')
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

# TOML table -> {key: Config field}
TABLES = {
    'google': {
        'calendar_id': 'calendar_id',
        'credentials_file': 'credentials_file',
        'token_file': 'token_file',
    },
    'outlook': {
        'client_id': 'outlook_client_id',
        'client_secret': 'outlook_client_secret',
        'tenant': 'outlook_tenant',
        'base_url': 'outlook_base_url',
    },
}


@dataclass(frozen=True)
class Config:
    """Immutable runtime settings, handed to each component at construction."""
    refresh_period_seconds: int = 300
    notification_period_minutes: int = 10
    retention_minutes: int = 15
    limit_days: int = 7
    tick_seconds: int = 30
    auth_timeout_millis: int = 120000
    token_safety_margin_seconds: int = 60
    sync_max_attempts: int = 4
    backoff_base_seconds: float = 2.0
    backoff_cap_seconds: float = 60.0
    http_timeout_seconds: float = 30.0
    relist_hours: int = 24
    provider: str = 'google'
    multiplexer: str = 'auto'
    log_level: str = 'INFO'
    calendar_id: str = DEFAULT_CALENDAR_ID
    credentials_file: str = CREDENTIALS_FILE
    token_file: str = TOKEN_FILE
    outlook_client_id: str = ''
    outlook_client_secret: str = ''
    outlook_tenant: str = OUTLOOK_DEFAULT_TENANT
    outlook_base_url: str = GRAPH_BASE_URL

    @property
    def poll_interval(self):
        return timedelta(seconds=self.refresh_period_seconds)

    @property
    def lead_time(self):
        return timedelta(minutes=self.notification_period_minutes)

    @property
    def retention(self):
        return timedelta(minutes=self.retention_minutes)

    @property
    def lookahead(self):
        return timedelta(days=self.limit_days)

    @property
    def relist_interval(self):
        return timedelta(hours=self.relist_hours)

    @property
    def tick_interval(self):
        return timedelta(seconds=self.tick_seconds)

    @property
    def safety_margin(self):
        return timedelta(seconds=self.token_safety_margin_seconds)

    def validate(self):
        """Reject values no component can work with."""
        if self.multiplexer not in MULTIPLEXERS:
            raise ConfigError(
                f"multiplexer must be one of {', '.join(MULTIPLEXERS)}, got {self.multiplexer!r}")
        if self.provider not in PROVIDERS:
            raise ConfigError(f"provider must be one of {', '.join(PROVIDERS)}, got {self.provider!r}")
        if self.provider == 'outlook' and not self.outlook_client_id:
            raise ConfigError("[outlook] client_id is required when provider is 'outlook'")
        for name in ('refresh_period_seconds', 'tick_seconds', 'sync_max_attempts', 'limit_days',
                     'relist_hours'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        for name in ('notification_period_minutes', 'retention_minutes',
                     'token_safety_margin_seconds', 'backoff_base_seconds'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ConfigError("backoff_cap_seconds must be >= backoff_base_seconds")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return self


def default_config_path():
    """Resolve the config file location from the environment."""
    return os.path.expanduser(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)


def load_config(path=None):
    """Load a Config from a TOML file, falling back to defaults if it is absent.

    Top-level keys map onto Config fields. The ``[google]`` table holds
    ``calendar_id``, ``credentials_file`` and ``token_file``; ``[outlook]`` holds
    ``client_id``, ``client_secret``, ``tenant`` and ``base_url``.
    """
    path = path or default_config_path()
    if not os.path.exists(path):
        return Config()

    try:
        with open(path, 'rb') as fh:
            data = tomllib.load(fh)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e

    for table, keys in TABLES.items():
        section = data.pop(table, {})
        if not isinstance(section, dict):
            raise ConfigError(f"[{table}] must be a table")
        for key, field_name in keys.items():
            if key in section:
                data[field_name] = section.pop(key)
        if section:
            raise ConfigError(f"Unknown keys in [{table}]: {', '.join(sorted(section))}")

    known = {f.name: f for f in fields(Config)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    values = {}
    for key, value in data.items():
        expected = known[key].type
        if expected is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if type(value) is not expected:
            raise ConfigError(
                f"{key} must be of type {expected.__name__}, got {type(value).__name__}")
        if key in ('credentials_file', 'token_file'):
            value = os.path.expanduser(value)
        values[key] = value

    return Config(**values).validate()
