"""Shared test fixtures."""

import asyncio
import sys
import time

import pytest

from degu.config import Settings


def python_cmd(code: str) -> list[str]:
    """Command vector running a Python snippet with the test interpreter."""
    return [sys.executable, "-c", code]


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.05):
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def app_dir(tmp_path):
    return tmp_path / "app"


@pytest.fixture
def settings(tmp_path, app_dir) -> Settings:
    """Settings pointing at a temporary app directory and no key file."""
    return Settings(
        app_dir=app_dir,
        ssh_key_file=tmp_path / "ssh_key",
        restart_delay=0.1,
        stop_timeout=2.0,
    )
