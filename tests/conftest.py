from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from fuelcheck.config import Environment
from fuelcheck.logging import setup_logging


@pytest.fixture(autouse=True)
def quiet_logging() -> "None":
    """
    routes logs to stderr at warning level so command output on
    stdout stays parseable.
    """
    setup_logging("warning")


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def environment(tmp_path: "Path") -> "Environment":
    """
    empty environment rooted at a throwaway home directory, so no
    test ever reads the real user's credentials.
    """
    return Environment(variables={"PATH": ""}, home=tmp_path)
