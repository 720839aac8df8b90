"""Shared fixtures."""

import asyncio
import os
import shutil
import tempfile

import pytest


@pytest.fixture
def socket_path():
    """A short socket path; Unix socket paths are limited to ~100 bytes."""
    directory = tempfile.mkdtemp(prefix="islet-", dir="/tmp")
    yield os.path.join(directory, "hooks.sock")
    shutil.rmtree(directory, ignore_errors=True)


async def _wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until():
    """Poll until predicate() is truthy."""
    return _wait_until
