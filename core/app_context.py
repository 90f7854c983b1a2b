import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from core.config_loader import AppConfig, DatabaseConfig, StoreConfig
from database.database import Database
from notification.channels import RealtimeTransport, build_channels
from notification.service import NotificationService
from notification.store import MemoryStore, NotificationStore, RedisStore

logger = logging.getLogger(__name__)


def _sanitize_url(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            sanitized = parsed._replace(
                netloc=f"{parsed.username or ''}:*@{parsed.hostname}:{parsed.port or 6379}"
            )
            return sanitized.geturl()
        return url
    except ValueError:
        return url


@dataclass
class AppContext:
    """Application context container that holds all wired dependencies.

    One store handle and one database are shared by every component for
    the lifetime of the context; close() releases them.
    """
    config: AppConfig
    store: NotificationStore
    database: Database
    notification_service: NotificationService

    @classmethod
    async def create(cls, config: AppConfig, transport: Optional[RealtimeTransport] = None) -> "AppContext":
        """Connect the store and build the context."""
        store = await cls._build_store(config.notifications.store)
        return cls.build(config, store, transport=transport)

    @classmethod
    def build(
        cls,
        config: AppConfig,
        store: NotificationStore,
        transport: Optional[RealtimeTransport] = None
    ) -> "AppContext":
        """Build an AppContext from config around an already connected store.

        Args:
            config: Loaded application configuration
            store: Shared store handle
            transport: Realtime transport for in-app pushes, if one is running

        Returns:
            Fully wired AppContext instance
        """
        database = cls._build_database(config.database)
        notification_config = config.notifications
        channels = build_channels(notification_config, database=database, transport=transport)
        notification_service = NotificationService(
            notification_config,
            store,
            database=database,
            channels=channels,
        )
        return cls(
            config=config,
            store=store,
            database=database,
            notification_service=notification_service,
        )

    @staticmethod
    async def _build_store(store_config: StoreConfig) -> NotificationStore:
        """Connect to Redis, or fall back to an in-process store when it is unreachable."""
        if store_config.backend == "memory":
            logger.info("Using in-memory store (single process only)")
            return MemoryStore()

        store = RedisStore.from_url(store_config.redis_url)
        if await store.ping():
            logger.info(f"Connected to Redis at {_sanitize_url(store_config.redis_url)}")
            return store

        logger.warning(
            f"Redis unavailable at {_sanitize_url(store_config.redis_url)}, "
            f"falling back to in-memory store (single process only)"
        )
        await store.close()
        return MemoryStore()

    @staticmethod
    def _build_database(database_config: DatabaseConfig) -> Database:
        database = Database(database_config.url)
        if database_config.create_tables:
            database.create_tables()
        return database

    async def close(self) -> None:
        await self.notification_service.shutdown()
        self.database.dispose()
