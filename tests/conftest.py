"""Pytest fixtures for ranking and orchestration flow tests."""

import pytest

from factories import Engine, build_engine


@pytest.fixture
def engine() -> Engine:
    return build_engine()
