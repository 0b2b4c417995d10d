"""Pytest configuration for the chatsync test suite."""

from __future__ import annotations

import logging

import pytest

from tests.fakes import FakeTransport, RecordingPresenter, make_context


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def presenter() -> RecordingPresenter:
    return RecordingPresenter()


@pytest.fixture
def context(transport: FakeTransport):
    """Session context backed by the fake transport and in-memory storage."""

    return make_context(transport)


@pytest.fixture
def events(caplog: pytest.LogCaptureFixture):
    """Return a callable listing structured telemetry events by name."""

    caplog.set_level(logging.DEBUG, logger="chatsync")

    def collect(name: str) -> list[dict]:
        return [
            record.json["payload"]
            for record in caplog.records
            if getattr(record, "json", {}).get("event") == name
        ]

    return collect
