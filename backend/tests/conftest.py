"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from courier.config import AppConfig
from courier.delivery.service import DeliveryService, set_delivery_service
from courier.delivery.store import DurableStore
from courier.main import app


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store():
    """A fresh in-memory DurableStore."""
    store = DurableStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_service(store):
    """Build a DeliveryService over the test store and install it globally."""
    def _make(config=None, **kwargs):
        kwargs.setdefault("sleep", lambda _: None)
        service = DeliveryService(store, config=config or AppConfig(), **kwargs)
        set_delivery_service(service)
        return service

    yield _make
    set_delivery_service(None)


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture(autouse=True)
def isolated_delivery_service():
    """Never let a test touch the on-disk database.

    Tests that exercise the app install an in-memory service through
    ``service``/``make_service``; anything else gets one here.
    """
    store = DurableStore(":memory:")
    set_delivery_service(DeliveryService(store, config=AppConfig()))
    yield
    set_delivery_service(None)
    store.close()


@pytest.fixture
def api_client(service):
    """Provide a TestClient for the main FastAPI app, backed by ``service``.

    Used without the context manager so the app lifespan (reaper task,
    on-disk store) does not run.
    """
    return TestClient(app)


@pytest.fixture
def users(service):
    """Three registered users: alice, bob and carol."""
    return {
        name: service.create_user(name.capitalize(), user_id=name)
        for name in ("alice", "bob", "carol")
    }


@pytest.fixture
def direct_chat(service, users):
    """A one-to-one chat between alice and bob."""
    return service.create_chat("alice", ["bob"])
