"""Pytest configuration for COGS tests."""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import logging
import sys
from pathlib import Path

import pytest

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
if str(PACKAGE_ROOT) not in sys.path:
    sys.path.insert(0, str(PACKAGE_ROOT))

from cogs.config.settings import RuntimeConfig
from cogs.state.context import RuntimeState, create_runtime_state
from cogs.state.models import Device

from tests.mocks import Clock, FakeIdentifier, make_devices

_HAS_PYTEST_ASYNCIO = importlib.util.find_spec("pytest_asyncio") is not None


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "asyncio: mark test to run on asyncio loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Fallback asyncio runner when pytest-asyncio is unavailable."""
    if _HAS_PYTEST_ASYNCIO:
        return None
    if "asyncio" not in pyfuncitem.keywords:
        return None
    test_function = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_function):
        return None

    kwargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
    asyncio.run(test_function(**kwargs))
    return True


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    """Close and remove all logging handlers after each test to prevent ResourceWarnings."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)


@pytest.fixture()
def runtime_config() -> RuntimeConfig:
    return RuntimeConfig(
        uds_socket="",
        tcp_socket="",
        poll_interval=0.05,
        claim_lease=30.0,
        wait_timeout=0.0,
    )


@pytest.fixture()
def runtime_state() -> RuntimeState:
    return create_runtime_state(config_source="test")


@pytest.fixture()
def identifier() -> FakeIdentifier:
    return FakeIdentifier()


@pytest.fixture()
def devices() -> list[Device]:
    return make_devices(2)


@pytest.fixture()
def clock() -> Clock:
    return Clock()
