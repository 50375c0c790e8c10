import os

import pytest


def pytest_configure(config):
    """Keep WAMUX_* variables from the developer's shell out of the test run."""
    for key in list(os.environ):
        if key.startswith("WAMUX_"):
            del os.environ[key]


@pytest.fixture(autouse=True)
def reset_relay_service():
    """Clear the API's global service after each test to prevent test interference."""
    yield
    from wamux.api import set_service

    set_service(None)
