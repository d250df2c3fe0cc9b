"""Database module for Mongo Auto-Rollback."""

import asyncio
import time
from typing import Optional, Union
from urllib.parse import quote_plus

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

from mongo_auto_rollback.auto_rollback import (
    AutoRollbackCollection,
    AutoRollbackConfig,
    ConfigurationError,
    MigrationSession,
    RollbackExecutor,
    RollbackOutcome,
    wrap_collection,
)
from mongo_auto_rollback.config import settings
from mongo_auto_rollback.managers.logging_manager import get_logger

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")
health_logger = get_logger(prefix="[DB_HEALTH]")


class DatabaseManager:
    """MongoDB database manager using Motor (async MongoDB driver)"""

    def __init__(self, config: Optional[AutoRollbackConfig] = None):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self.config: AutoRollbackConfig = config or AutoRollbackConfig.from_settings(settings)
        self._connection_retries = 3
        # Will be set after connect(); True when connected to a replica-set or mongos that supports transactions
        self.transactions_supported: Optional[bool] = None

    def _connection_string(self) -> str:
        if not settings.MONGODB_URL:
            raise ConfigurationError("No MONGODB_URL defined in configuration")

        if settings.MONGODB_USERNAME and settings.MONGODB_PASSWORD:
            username = quote_plus(settings.MONGODB_USERNAME)
            password = quote_plus(settings.MONGODB_PASSWORD.get_secret_value())
            # Keep whichever scheme was configured, mongodb:// or mongodb+srv://
            scheme, _, address = settings.MONGODB_URL.partition("://")
            db_logger.debug("Using authenticated connection to MongoDB")
            return f"{scheme}://{username}:{password}@{address}"
        db_logger.debug("Using unauthenticated connection to MongoDB")
        return settings.MONGODB_URL

    async def connect(self):
        """Connect to MongoDB with retry logic"""
        start_time = time.time()
        db_logger.info("Starting MongoDB connection process")
        connection_string = self._connection_string()

        for attempt in range(self._connection_retries):
            attempt_start = time.time()
            try:
                db_logger.info("Connection attempt %d/%d to MongoDB", attempt + 1, self._connection_retries)
                db_logger.info(
                    "MongoDB connection config - URL: %s, Database: %s, ServerTimeout: %dms, ConnTimeout: %dms",
                    settings.MONGODB_URL,
                    settings.MONGODB_DATABASE,
                    settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    settings.MONGODB_CONNECTION_TIMEOUT,
                )

                self.client = AsyncIOMotorClient(
                    connection_string,
                    serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                )
                self.database = self.client[settings.MONGODB_DATABASE]

                ping_start = time.time()
                await self.client.admin.command("ping")
                ping_duration = time.time() - ping_start
                await self._detect_transaction_support()

                total_duration = time.time() - start_time
                perf_logger.info(
                    "MongoDB connection established successfully in %.3fs (ping: %.3fs)", total_duration, ping_duration
                )
                db_logger.info("Successfully connected to MongoDB database: %s", settings.MONGODB_DATABASE)
                return

            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                attempt_duration = time.time() - attempt_start
                perf_logger.warning("Connection attempt %d failed after %.3fs", attempt + 1, attempt_duration)
                db_logger.warning(
                    "Failed to connect to MongoDB (attempt %d/%d): %s", attempt + 1, self._connection_retries, e
                )
                if attempt == self._connection_retries - 1:
                    total_duration = time.time() - start_time
                    db_logger.error("All connection attempts failed after %.3fs", total_duration)
                    raise

                backoff_time = 2**attempt
                db_logger.info("Waiting %.1fs before retry (exponential backoff)", backoff_time)
                await asyncio.sleep(backoff_time)

    async def _detect_transaction_support(self):
        try:
            hello = await self.client.admin.command({"hello": 1})
            # Replica set members report setName, mongos reports isdbgrid
            self.transactions_supported = bool(hello.get("setName") or hello.get("msg") == "isdbgrid")
        except PyMongoError as e:
            db_logger.warning("Could not detect transaction support, assuming none: %s", e)
            self.transactions_supported = False

        if self.config.use_transactions and not self.transactions_supported:
            db_logger.warning(
                "AUTO_ROLLBACK_USE_TRANSACTIONS is set but the server does not support transactions; "
                "undo log appends fall back to compensating deletes"
            )
            self.config = self.config.model_copy(update={"use_transactions": False})

    async def disconnect(self):
        """Disconnect from MongoDB"""
        if self.client:
            self.client.close()
            self.client = None
            self.database = None
            db_logger.info("Successfully disconnected from MongoDB")
        else:
            db_logger.warning("Disconnect called but no active MongoDB connection found")

    async def health_check(self) -> bool:
        """Check database connection health"""
        start_time = time.time()
        health_logger.debug("Starting database health check")

        if self.client is None:
            health_logger.warning("Health check failed: No database client available")
            return False

        try:
            await self.client.admin.command("ping")
        except (ServerSelectionTimeoutError, ConnectionFailure) as e:
            duration = time.time() - start_time
            perf_logger.warning("Database health check failed after %.3fs", duration)
            health_logger.error("Database health check failed: %s", e)
            return False

        perf_logger.debug("Database health check completed successfully in %.3fs", time.time() - start_time)
        return True

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Get a raw collection from the database"""
        db_logger.debug("Requesting collection: %s", collection_name)

        if self.database is None:
            db_logger.error("Cannot get collection '%s': Database not connected", collection_name)
            raise RuntimeError("Database not connected")

        return self.database[collection_name]

    def get_migration_collection(
        self, collection_name: str, session: MigrationSession
    ) -> Union[AsyncIOMotorCollection, AutoRollbackCollection]:
        """Get a collection whose writes are undo-logged for the given migration session"""
        return wrap_collection(self.get_collection(collection_name), session, self.config)

    async def auto_rollback(self, session: MigrationSession) -> RollbackOutcome:
        """Replay the undo log of the session's migration"""
        if self.database is None:
            raise RuntimeError("Database not connected")
        return await RollbackExecutor(self.database, self.config).rollback(session)

    async def create_indexes(self):
        """Create the undo log index used for replay ordering"""
        if not self.config.auto_rollback_collection_name:
            db_logger.info("Auto-rollback collection not configured, skipping index creation")
            return

        undo_log = self.get_collection(self.config.auto_rollback_collection_name)
        await undo_log.create_index(
            [
                ("migration_id", ASCENDING),
                ("target_collection", ASCENDING),
                ("timestamp", DESCENDING),
                ("sequence", DESCENDING),
            ],
            name="migration_replay_order",
        )
        db_logger.info("Ensured replay-order index on '%s'", self.config.auto_rollback_collection_name)


class MigrationDatabase:
    """
    Database handle given to a migration script.

    Binds the database manager to one migration session so that
    `get_collection` returns undo-logged collections and `auto_rollback`
    replays this migration's log.
    """

    def __init__(self, manager: DatabaseManager, session: MigrationSession):
        self._manager = manager
        self.session = session

    def get_collection(self, collection_name: str) -> Union[AsyncIOMotorCollection, AutoRollbackCollection]:
        return self._manager.get_migration_collection(collection_name, self.session)

    def __getitem__(self, collection_name: str):
        return self.get_collection(collection_name)

    async def auto_rollback(self) -> RollbackOutcome:
        return await self._manager.auto_rollback(self.session)


db_manager = DatabaseManager()
