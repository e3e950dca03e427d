import asyncio
import logging
import re
from enum import Enum
from typing import Any, Callable, Optional

import certifi
from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError
from pymongo.monitoring import TopologyListener

from product_api.exceptions import (
    DatabaseUnavailableError,
    FatalConnectionError,
    PostConnectDriverError,
    TransientConnectionError,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "products"

# Per-attempt timeouts; the retry loop itself has no overall timeout.
MONGO_OPTIONS = {
    "serverSelectionTimeoutMS": 5000,
    "socketTimeoutMS": 45000,
    "retryWrites": True,
}

_CREDENTIALS = re.compile(r"(?<=://)[^@/]+@")
_TLS_FLAG = re.compile(r"[?&](tls|ssl)=true", re.IGNORECASE)


class ConnectionState(str, Enum):
    connecting = "connecting"
    connected = "connected"
    disconnected = "disconnected"
    failed = "failed"


def redact_uri(uri: str) -> str:
    return _CREDENTIALS.sub("***@", uri)


def mongo_options(uri: str) -> dict:
    options = dict(MONGO_OPTIONS)
    if uri.startswith("mongodb+srv://") or _TLS_FLAG.search(uri):
        options["tlsCAFile"] = certifi.where()
    return options


class _TopologyListener(TopologyListener):
    def __init__(self, manager: "ConnectionManager"):
        self._manager = manager

    def opened(self, event):
        pass

    def description_changed(self, event):
        # Single members coming and going are routine; only losing every
        # writable server counts as losing the database.
        if not event.previous_description.has_writable_server():
            return
        if event.new_description.has_writable_server():
            return
        topology = event.new_description
        self._manager.record_driver_error(
            PostConnectDriverError(
                topology.topology_type_name,
                "no writable server available",
            )
        )

    def closed(self, event):
        pass


class ConnectionManager:
    """Owns the MongoDB client and the state of its connection.

    ``connect`` tries a fixed number of times with a fixed delay between
    attempts. Once connected, a lost server is recorded as ``disconnected``
    and never reconnected by the manager; recovery is a process restart.
    """

    def __init__(
        self,
        uri: str,
        db_name: Optional[str] = None,
        client_factory: Callable[..., Any] = AsyncMongoClient,
        **client_options,
    ):
        self.uri = uri
        self.db_name = db_name
        self.client_options = client_options or mongo_options(uri)
        self._client_factory = client_factory
        self._client = None
        self._state = ConnectionState.connecting
        self.attempts = 0
        self.last_error: Optional[BaseException] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.connected

    @property
    def client(self):
        if self._client is None:
            raise DatabaseUnavailableError("No database client is connected")
        return self._client

    @property
    def db(self):
        return self.client.get_default_database(default=self.db_name or DEFAULT_DB_NAME)

    def get_collection(self, name: str):
        if not self.is_connected:
            raise DatabaseUnavailableError(f"Database is {self._state.value}")
        return self.db[name]

    async def connect(self, max_attempts: int = 15, delay_ms: int = 3000) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        logger.info("Connecting to MongoDB at %s", redact_uri(self.uri))
        for attempt in range(1, max_attempts + 1):
            self.attempts = attempt
            try:
                self._client = await self._try_connect()
            except TransientConnectionError as e:
                self.last_error = e
                logger.warning(str(e))
                if attempt < max_attempts:
                    logger.info("Retrying in %dms...", delay_ms)
                    await asyncio.sleep(delay_ms / 1000)
                continue

            self._state = ConnectionState.connected
            logger.info("Database connected successfully on attempt %d", attempt)
            return

        self._state = ConnectionState.failed
        logger.error("All %d connection attempts failed", max_attempts)
        raise FatalConnectionError(max_attempts, self.last_error) from self.last_error

    async def _try_connect(self):
        client = None
        try:
            client = self._client_factory(
                self.uri,
                event_listeners=[_TopologyListener(self)],
                **self.client_options,
            )
            await client.admin.command("ping")
        except PyMongoError as e:
            await self._discard(client)
            raise TransientConnectionError(self.attempts, str(e)) from e
        except BaseException:
            # Cancelled mid-handshake, e.g. at shutdown.
            await self._discard(client)
            raise
        return client

    @staticmethod
    async def _discard(client) -> None:
        if client is not None:
            await client.close()

    def record_driver_error(self, error: PostConnectDriverError) -> None:
        # The topology has no writable server while the first connection is
        # still being attempted; only a loss after connecting changes state.
        if self._state is not ConnectionState.connected:
            return
        self.last_error = error
        self._state = ConnectionState.disconnected
        logger.error("Database error: %s", error)

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        if self._state is ConnectionState.connected:
            self._state = ConnectionState.disconnected
        await client.close()
        logger.info("Database connection closed")
