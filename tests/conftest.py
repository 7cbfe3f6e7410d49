"""Shared pytest fixtures.

Fake Playwright objects live in helpers.py.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from database import CatalogStore
from helpers import make_pool
from watcher import CompletionWatcher


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    store = CatalogStore(":memory:", clock=clock)
    store.open()
    yield store
    store.close()


@pytest.fixture
def fast_watcher():
    return CompletionWatcher(
        poll_interval=0,
        timeout=0.5,
        idle_polls=3,
        send_retries=3,
        send_retry_delay=0,
        settle_delay=0,
        hesitation=None,
    )


@pytest.fixture
def pool():
    return make_pool()
