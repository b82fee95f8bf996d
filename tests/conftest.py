"""Shared fixtures."""

import os
import sys

import pytest
from pymongo.errors import AutoReconnect

# Project root and this directory, so tests run without an install
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import FakeDestination, FakeSource, MemoryCheckpointStore  # noqa: E402


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def destination():
    return FakeDestination()


@pytest.fixture
def checkpoint_store():
    return MemoryCheckpointStore()


@pytest.fixture
def disconnect():
    return AutoReconnect("connection reset by peer")
