"""
Shared test fixtures for the Creator Pulse test suite.

External HTTP (YouTube Data API, studio backend) is replaced with
httpx.MockTransport handlers so no test touches the network. Time is driven
through FakeClock (tests/helpers.py) so cooldowns and windows can be crossed
instantly.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from helpers import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    from services.snapshot_store import SnapshotStore

    return SnapshotStore(str(tmp_path / "cache"))
