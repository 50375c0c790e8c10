"""
Shared fixtures for the unit test suite.
"""
import pytest

from wamux.config import Settings
from wamux.models import TransportEventKind
from wamux.registry import AccountRegistry
from wamux.store.memory import MemoryStore

from tests.unit.fakes import FakeTransportFactory


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: Slow tests that should not run by default (deselect with '-m \"not slow\"')"
    )


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
async def registry(store, transport_factory, settings):
    """Registry with fake transports. Async so locks and queues share the test loop."""
    reg = AccountRegistry(store, transport_factory, settings=settings)
    yield reg
    await reg.shutdown()


@pytest.fixture
def make_ready_account(registry, transport_factory):
    """Return a coroutine that creates an account and drives it to ``ready``."""

    async def _make(name="acct"):
        account = await registry.create_account(name, "")
        client = transport_factory.clients[account.id]
        client.emit(TransportEventKind.READY, "15551234@c.us")
        await registry.wait_idle(account.id)
        return account, client

    return _make
