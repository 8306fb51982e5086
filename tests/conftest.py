"""Shared pytest fixtures for esb end-to-end tests."""

import pytest

from esb.mocks import MockTransport, fixed_output
from esb.session import Session


@pytest.fixture
def device_session():
    """Factory for open sessions whose device prints a fixed payload for every script."""
    opened = []

    def factory(payload, *, echo=True, declared_echo=None, **kwargs):
        transport = MockTransport(fixed_output(payload), echo=echo, declared_echo=declared_echo)
        session = Session(transport, **kwargs).open()
        opened.append(session)
        return session

    yield factory
    for session in opened:
        session.disconnect()


@pytest.fixture(autouse=True)
def isolate_environment(tmp_path, monkeypatch):
    """Keep tests away from the user's profile and /tmp lock dir."""
    for var in ("ESB_CONFIG", "ESB_PORT", "ESB_BAUD", "ESB_USERNAME", "ESB_PASSWORD", "ESB_SHELL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("ESB_RUN_DIR", str(tmp_path / "run"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
