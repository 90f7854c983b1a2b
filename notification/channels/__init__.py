"""
Delivery channels.

CHANNEL_CLASSES is the static registry of channel implementations keyed
by channel name; build_channels() instantiates the ones enabled in config.
"""

import logging
from typing import Dict, Optional, Type

import httpx

from core.config_loader import NotificationConfig
from database.database import Database
from notification.channels.base import NotificationChannel
from notification.channels.email import EmailChannel
from notification.channels.in_app import InAppChannel, RealtimeTransport
from notification.channels.push import PushChannel
from notification.channels.sms import SmsChannel
from notification.channels.webhook import WebhookChannel

logger = logging.getLogger(__name__)

CHANNEL_CLASSES: Dict[str, Type[NotificationChannel]] = {
    'email': EmailChannel,
    'sms': SmsChannel,
    'push': PushChannel,
    'webhook': WebhookChannel,
    'inApp': InAppChannel,
}


def create_channel(
    name: str,
    channel_config,
    sandbox: bool = False,
    database: Optional[Database] = None,
    transport: Optional[RealtimeTransport] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> NotificationChannel:
    """
    Create a channel instance by name.

    Raises:
        ValueError: If the channel name is unknown
    """
    channel_class = CHANNEL_CLASSES.get(name)
    if channel_class is None:
        available = ', '.join(CHANNEL_CLASSES.keys())
        raise ValueError(f"Unknown channel type: {name}. Available: {available}")

    if channel_class is InAppChannel:
        return InAppChannel(config=channel_config, database=database, transport=transport, sandbox=sandbox)
    return channel_class(config=channel_config, sandbox=sandbox, http_client=http_client)


def build_channels(
    config: NotificationConfig,
    database: Optional[Database] = None,
    transport: Optional[RealtimeTransport] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> Dict[str, NotificationChannel]:
    """Instantiate every channel that has a config section."""
    channels: Dict[str, NotificationChannel] = {}
    for name in CHANNEL_CLASSES:
        channel_config = getattr(config.channels, name, None)
        if channel_config is None:
            continue
        channel = create_channel(
            name, channel_config,
            sandbox=config.sandbox, database=database,
            transport=transport, http_client=http_client,
        )
        if not channel.validate_config():
            logger.warning(f"Channel '{name}' is enabled but not fully configured")
        channels[name] = channel
    logger.info(f"Configured channels: {', '.join(channels) or 'none'}"
                f"{' (sandbox)' if config.sandbox else ''}")
    return channels


__all__ = [
    'CHANNEL_CLASSES',
    'NotificationChannel',
    'EmailChannel',
    'SmsChannel',
    'PushChannel',
    'WebhookChannel',
    'InAppChannel',
    'RealtimeTransport',
    'create_channel',
    'build_channels',
]
