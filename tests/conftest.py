import asyncio
import os
import time
from types import SimpleNamespace

import pytest
from bson import ObjectId
from pymongo.errors import ServerSelectionTimeoutError

# Settings read the environment at import time via load_dotenv; keep tests
# independent from any local .env file.
os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017/products")

from product_api.config import Settings  # noqa: E402
from product_api.database import ConnectionManager  # noqa: E402

TEST_URI = "mongodb://localhost:27017/products"


class FakeCursor:
    def __init__(self, documents):
        self._documents = documents

    def skip(self, count):
        self._documents = self._documents[count:]
        return self

    def limit(self, count):
        self._documents = self._documents[:count]
        return self

    async def to_list(self, length=None):
        return list(self._documents if length is None else self._documents[:length])


class FakeCollection:
    """In-memory stand-in for an async pymongo collection, keyed on _id."""

    def __init__(self):
        self.documents = {}

    async def count_documents(self, filter):
        return len(self.documents)

    def find(self, filter):
        return FakeCursor([dict(doc) for doc in self.documents.values()])

    async def find_one(self, filter):
        document = self.documents.get(filter["_id"])
        return dict(document) if document else None

    async def insert_one(self, document):
        document.setdefault("_id", ObjectId())
        self.documents[document["_id"]] = dict(document)
        return SimpleNamespace(inserted_id=document["_id"])

    async def find_one_and_update(self, filter, update, return_document=None):
        document = self.documents.get(filter["_id"])
        if document is None:
            return None
        document.update(update["$set"])
        return dict(document)

    async def find_one_and_delete(self, filter):
        return self.documents.pop(filter["_id"], None)


class BrokenCollection:
    """Every async operation raises ``error``; by default the way a vanished
    server does."""

    def __init__(self, error=None):
        self.error = error or ServerSelectionTimeoutError("No servers available")

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise self.error

        return fail


class FakeDatabase:
    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())


class FakeClient:
    def __init__(self, uri, fail=False, ping_delay=0, **options):
        self.uri = uri
        self.fail = fail
        self.ping_delay = ping_delay
        self.options = options
        self.closed = False
        self.database = FakeDatabase()
        self.admin = SimpleNamespace(command=self._command)

    async def _command(self, name):
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)
        if self.fail:
            raise ServerSelectionTimeoutError("localhost:27017: [Errno 111] Connection refused")
        return {"ok": 1.0}

    def get_default_database(self, default=None):
        return self.database

    async def close(self):
        self.closed = True

    @property
    def topology_listener(self):
        return self.options["event_listeners"][0]


class FlakyClientFactory:
    """Builds FakeClients whose handshake fails for the first ``failures`` attempts."""

    def __init__(self, failures=0, ping_delay=0):
        self.failures = failures
        self.ping_delay = ping_delay
        self.clients = []
        self.call_times = []

    def __call__(self, uri, **options):
        self.call_times.append(time.monotonic())
        client = FakeClient(
            uri,
            fail=len(self.clients) < self.failures,
            ping_delay=self.ping_delay,
            **options,
        )
        self.clients.append(client)
        return client

    @property
    def attempts(self):
        return len(self.clients)


def topology(writable, topology_type="ReplicaSetWithPrimary"):
    return SimpleNamespace(
        has_writable_server=lambda: writable,
        topology_type_name=topology_type,
    )


def topology_change(was_writable=True, is_writable=False, topology_type="ReplicaSetNoPrimary"):
    return SimpleNamespace(
        previous_description=topology(was_writable),
        new_description=topology(is_writable, topology_type),
        topology_id=None,
    )


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def settings():
    return Settings(mongo_uri=TEST_URI, connect_attempts=3, connect_delay_ms=10)


@pytest.fixture
def connected_manager():
    manager = ConnectionManager(TEST_URI, client_factory=FlakyClientFactory())
    asyncio.run(manager.connect(1, 0))
    return manager
