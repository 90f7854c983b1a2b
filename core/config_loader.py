import yaml
import os
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field


class StoreConfig(BaseModel):
    backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379/0"


class DatabaseConfig(BaseModel):
    url: str = "sqlite:///notifications.db"
    create_tables: bool = True


class RateWindow(BaseModel):
    window_seconds: int
    max: int


def _default_channel_limits() -> Dict[str, RateWindow]:
    return {
        'email': RateWindow(window_seconds=3600, max=50),
        'sms': RateWindow(window_seconds=3600, max=20),
        'push': RateWindow(window_seconds=3600, max=100),
        'webhook': RateWindow(window_seconds=3600, max=200),
        'inApp': RateWindow(window_seconds=3600, max=500),
    }


class RateLimitConfig(BaseModel):
    per_user: RateWindow = RateWindow(window_seconds=3600, max=100)
    per_channel: Dict[str, RateWindow] = Field(default_factory=_default_channel_limits)


class QueueConfig(BaseModel):
    """
    Configuration for the priority job queues and their worker pools.

    Delays and timeouts are in seconds.
    """
    names: Dict[str, str] = Field(default_factory=lambda: {
        'high': 'notifications:high',
        'normal': 'notifications:normal',
        'low': 'notifications:low',
        'digest': 'notifications:digest',
    })
    concurrency: int = 10
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    timeout_seconds: float = 30.0
    poll_interval_seconds: float = 0.5
    stalled_after_seconds: Optional[float] = None  # default: twice timeout_seconds
    recovery_interval_seconds: float = 60.0
    digest_interval_seconds: int = 3600


class TemplatesConfig(BaseModel):
    path: str = "templates"
    app_name: str = "ZKFair"
    app_url: str = "https://zkfair.io"


class EmailChannelConfig(BaseModel):
    provider: Literal["sendgrid", "ses", "smtp"] = "smtp"
    from_email: str = "noreply@zkfair.io"
    from_name: str = "ZKFair"
    reply_to: Optional[str] = None
    api_key: Optional[str] = None  # SendGrid
    region: str = "us-east-1"  # SES
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    template_ids: Dict[str, str] = {}  # notification type -> provider template id
    click_tracking: bool = True
    open_tracking: bool = True
    timeout_seconds: float = 10.0


class SmsChannelConfig(BaseModel):
    provider: Literal["twilio", "aws-sns", "messagebird"] = "twilio"
    from_number: Optional[str] = None
    account_sid: Optional[str] = None  # Twilio
    auth_token: Optional[str] = None  # Twilio
    access_key: Optional[str] = None  # MessageBird
    region: str = "us-east-1"  # SNS
    max_length: int = 160
    timeout_seconds: float = 10.0


class FirebaseConfig(BaseModel):
    project_id: str
    client_email: str
    private_key: str
    token_uri: str = "https://oauth2.googleapis.com/token"


class ApnsConfig(BaseModel):
    team_id: str
    key_id: str
    private_key: str
    bundle_id: str
    production: bool = False


class PushChannelConfig(BaseModel):
    firebase: Optional[FirebaseConfig] = None
    apns: Optional[ApnsConfig] = None
    default_icon: str = "ic_notification"
    default_color: str = "#4F46E5"
    default_sound: str = "default"
    timeout_seconds: float = 10.0


class WebhookChannelConfig(BaseModel):
    secret: Optional[str] = None  # HMAC-SHA256 signing secret
    signature_header: str = "X-Webhook-Signature"
    timeout_seconds: float = 10.0
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    verify_public_host: bool = True  # reject hosts resolving to private addresses


class InAppChannelConfig(BaseModel):
    max_notifications_per_user: int = 100
    default_expiry_days: int = 30
    auto_mark_as_read: bool = False


class ChannelsConfig(BaseModel):
    email: Optional[EmailChannelConfig] = None
    sms: Optional[SmsChannelConfig] = None
    push: Optional[PushChannelConfig] = None
    webhook: Optional[WebhookChannelConfig] = None
    inApp: Optional[InAppChannelConfig] = InAppChannelConfig()


class PreferencesConfig(BaseModel):
    cache_ttl_seconds: int = 3600


class NotificationConfig(BaseModel):
    """
    Configuration for the notification engine.

    Controls channels, queueing, rate limits and analytics retention.
    """
    sandbox: bool = False  # All channels fabricate results, no provider calls
    store: StoreConfig = StoreConfig()
    queue: QueueConfig = QueueConfig()
    rate_limits: RateLimitConfig = RateLimitConfig()
    preferences: PreferencesConfig = PreferencesConfig()
    templates: TemplatesConfig = TemplatesConfig()
    channels: ChannelsConfig = ChannelsConfig()
    analytics_retention_days: int = 30


class AppConfig(BaseModel):
    database: DatabaseConfig = DatabaseConfig()
    notifications: NotificationConfig = NotificationConfig()


# Environment variable -> (path in config data). Secrets live in the env, not in config.yaml.
ENV_OVERRIDES: Dict[str, List[str]] = {
    "DATABASE_URL": ["database", "url"],
    "REDIS_URL": ["notifications", "store", "redis_url"],
    "APP_URL": ["notifications", "templates", "app_url"],
    "NOTIFICATION_RATE_LIMIT_PER_USER": ["notifications", "rate_limits", "per_user", "max"],
    "NOTIFICATION_CONCURRENCY": ["notifications", "queue", "concurrency"],
    "SENDGRID_API_KEY": ["notifications", "channels", "email", "api_key"],
    "SMTP_HOST": ["notifications", "channels", "email", "smtp_host"],
    "SMTP_PORT": ["notifications", "channels", "email", "smtp_port"],
    "SMTP_USERNAME": ["notifications", "channels", "email", "smtp_username"],
    "SMTP_PASSWORD": ["notifications", "channels", "email", "smtp_password"],
    "TWILIO_ACCOUNT_SID": ["notifications", "channels", "sms", "account_sid"],
    "TWILIO_AUTH_TOKEN": ["notifications", "channels", "sms", "auth_token"],
    "MESSAGEBIRD_ACCESS_KEY": ["notifications", "channels", "sms", "access_key"],
    "WEBHOOK_SECRET": ["notifications", "channels", "webhook", "secret"],
}


def _set_path(data: Dict[str, Any], path: List[str], value: Any) -> None:
    node = data
    for key in path[:-1]:
        if not isinstance(node.get(key), dict):
            node[key] = {}
        node = node[key]
    node[path[-1]] = value


def _is_truthy(value: str) -> bool:
    return value.lower() in ('true', '1', 'yes')


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from another directory), try repo root
    if not os.path.exists(config_path):
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", "config.yaml")

    data: Dict[str, Any] = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

    channels = (data.get("notifications") or {}).get("channels") or {}
    for env_name, path in ENV_OVERRIDES.items():
        env_value = os.environ.get(env_name)
        if not env_value:
            continue
        # Provider secrets only fill in channels that config.yaml enables
        if path[1] == "channels" and not isinstance(channels.get(path[2]), dict):
            continue
        _set_path(data, path, env_value)

    # NOTIFICATION_DRY_RUN kept as an alias for sandbox mode
    sandbox = os.environ.get("NOTIFICATION_SANDBOX") or os.environ.get("NOTIFICATION_DRY_RUN")
    if sandbox:
        _set_path(data, ["notifications", "sandbox"], _is_truthy(sandbox))

    return AppConfig(**data)
