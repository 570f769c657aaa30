"""Shared fixtures for unit tests."""

from __future__ import annotations

import pytest

from fakes import Clock, FakeReleaseProvider, FakeStore


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(clock: Clock) -> FakeStore:
    return FakeStore(clock)


@pytest.fixture
def release_provider() -> FakeReleaseProvider:
    return FakeReleaseProvider()
