"""Pytest configuration and fixtures."""

import pytest

import estimation_service.logging_config as logging_config_module
from estimation_service.logging_config import configure_logging


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure structlog once per session; cache_logger_on_first_use=False keeps tests isolated."""
    configure_logging(log_level="DEBUG")


@pytest.fixture(autouse=True)
def reset_logging_config() -> None:
    """Reset logging config state before each test for isolation."""
    logging_config_module._CONFIGURED = False


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
