"""Shared fixtures for transport and transfer tests."""

from __future__ import annotations

import pytest
from fakes import FakeLink, SerialPeer

from xosslink.ymodem.config import YmodemConfig


@pytest.fixture
def fast_config() -> YmodemConfig:
    """Short timeouts and small retry budgets for scripted transfers."""
    return YmodemConfig(
        handshake_interval=0.2,
        handshake_attempts=2,
        handshake_timeout=0.3,
        block_timeout=0.3,
        max_retries=2,
        batch_end_attempts=1,
        purge_quiet_time=0.01,
    )


@pytest.fixture
def fake_link() -> FakeLink:
    return FakeLink()


@pytest.fixture
def serial_peer() -> SerialPeer:
    return SerialPeer()
