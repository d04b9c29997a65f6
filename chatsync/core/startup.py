# =============================================================================
# File: chatsync/core/startup.py
# Description: Infrastructure initialization (logging, PostgreSQL, Redis,
#              storage) and per-user engine construction
# =============================================================================

"""
Composition root.

    infra = await initialize_infrastructure(auth)
    engine = infra.create_engine()
    await engine.start()
    ...
    await engine.stop()
    await shutdown_infrastructure()

One ChangeFeedPublisher is shared by the store (server side) and every
engine created here subscribes through the same Redis transport.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from chatsync.chat.ports.object_storage_port import AuthPort
from chatsync.config.logging_config import get_logger, log_startup_summary, setup_logging
from chatsync.config.pg_client_config import DatabaseConfig, get_database_config
from chatsync.config.realtime_config import RealtimeConfig, get_realtime_config
from chatsync.config.redis_config import RedisConfig, get_redis_config
from chatsync.config.storage_config import StorageConfig, get_storage_config
from chatsync.engine import ChatSyncEngine
from chatsync.infra.persistence import pg_client, redis_client
from chatsync.infra.storage.local_adapter import LocalStorageAdapter
from chatsync.infra.store.pg_chat_store import PgChatStore
from chatsync.infra.transport.redis_change_feed import RedisChangeFeedTransport
from chatsync.realtime.publisher import ChangeFeedPublisher

logger = get_logger("chatsync.startup")


@dataclass
class ChatSyncInfrastructure:
    """Process-wide adapters shared by every engine"""

    store: PgChatStore
    transport: RedisChangeFeedTransport
    publisher: ChangeFeedPublisher
    storage: LocalStorageAdapter
    auth: AuthPort
    realtime_config: RealtimeConfig
    storage_config: StorageConfig
    components: Dict[str, str] = field(default_factory=dict)

    def create_engine(self) -> ChatSyncEngine:
        return ChatSyncEngine(
            self.store,
            self.storage,
            self.auth,
            self.transport,
            self.realtime_config,
            self.storage_config,
        )

    async def health(self) -> Dict[str, Any]:
        return {
            "postgres": await pg_client.health_check(),
            "redis": await redis_client.health_check(),
            "publisher": self.publisher.get_metrics(),
        }


async def initialize_databases(config: DatabaseConfig) -> None:
    await pg_client.init_db_pool(config=config)
    logger.info("PostgreSQL pool initialized.")

    if not config.run_schema_on_startup:
        logger.info("Schema run disabled (POSTGRES_RUN_SCHEMA_ON_STARTUP=false)")
        return
    try:
        await pg_client.run_schema_from_file(config.schema_file)
    except FileNotFoundError as e:
        logger.warning(f"Schema file not found, skipping schema run: {e}")


async def initialize_infrastructure(
        auth: AuthPort,
        database_config: Optional[DatabaseConfig] = None,
        redis_config: Optional[RedisConfig] = None,
        storage_config: Optional[StorageConfig] = None,
        realtime_config: Optional[RealtimeConfig] = None,
        configure_logging: bool = True,
) -> ChatSyncInfrastructure:
    """
    Bring up logging, the PostgreSQL pool (+ schema), the Redis client and
    the storage adapter, then wire the store and change-feed transport.

    Raises:
        InfrastructureError: PostgreSQL or Redis unreachable (nothing is left open)
    """
    if configure_logging:
        setup_logging("chatsync")

    database_config = database_config or get_database_config()
    redis_config = redis_config or get_redis_config()
    storage_config = storage_config or get_storage_config()
    realtime_config = realtime_config or get_realtime_config()
    logger.debug(f"Realtime settings: {realtime_config.to_dict()}")

    await initialize_databases(database_config)
    try:
        client = await redis_client.init_global_client(redis_config)
    except Exception:
        await pg_client.close_db_pool()
        raise
    logger.info("Global Redis client initialized.")

    transport = RedisChangeFeedTransport(client, redis_config)
    publisher = ChangeFeedPublisher(transport)
    infra = ChatSyncInfrastructure(
        store=PgChatStore(publisher, auth),
        transport=transport,
        publisher=publisher,
        storage=LocalStorageAdapter(storage_config),
        auth=auth,
        realtime_config=realtime_config,
        storage_config=storage_config,
        components={
            "PostgreSQL": "ready",
            "Redis change feed": f"ready (prefix {redis_config.channel_prefix})",
            "Storage": f"local {storage_config.base_path}",
        },
    )
    log_startup_summary(logger, "chatsync infrastructure", infra.components)
    return infra


async def shutdown_infrastructure() -> None:
    """Close Redis, then the PostgreSQL pool. Errors are logged, not raised."""
    try:
        await redis_client.close_global_client()
    except Exception as e:
        logger.error(f"Error closing Redis client: {e}")
    try:
        await pg_client.close_db_pool()
        logger.info("Main database pool closed")
    except Exception as e:
        logger.error(f"Error closing main database pool: {e}")
