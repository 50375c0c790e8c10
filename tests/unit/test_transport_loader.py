"""
Tests for loading the transport factory from a dotted path.
"""

import pytest

from wamux.transport.loader import load_transport_factory

from tests.unit.fakes import FakeTransportClient, FakeTransportFactory

# Module-level factory used by the loader tests.
fake_factory = FakeTransportFactory()
not_callable = "just a string"


def test_loads_callable():
    factory = load_transport_factory("tests.unit.test_transport_loader:fake_factory")

    assert factory is fake_factory
    client = factory("a1", None)
    assert isinstance(client, FakeTransportClient)
    assert client.account_id == "a1"


def test_loads_class():
    factory = load_transport_factory("tests.unit.fakes:FakeTransportClient")
    assert factory is FakeTransportClient


@pytest.mark.parametrize("path", [
    "",
    "no_colon_here",
    "module:",
    ":attr",
    "bad-name:factory",
    "os:system; rm -rf /",
    "pkg.mod:factory\x00",
    "a" * 300 + ":f",
])
def test_malformed_paths(path):
    with pytest.raises(ValueError):
        load_transport_factory(path)


def test_missing_module():
    with pytest.raises(ImportError):
        load_transport_factory("wamux_transport_that_does_not_exist:factory")


def test_missing_attribute():
    with pytest.raises(ValueError):
        load_transport_factory("tests.unit.fakes:no_such_factory")


def test_attribute_not_callable():
    with pytest.raises(ValueError):
        load_transport_factory("tests.unit.test_transport_loader:not_callable")
