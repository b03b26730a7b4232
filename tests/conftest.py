"""Shared test configuration."""

from __future__ import annotations

import logging

import pytest


@pytest.fixture(autouse=True)
def _quiet_paramiko(caplog: pytest.LogCaptureFixture) -> None:
    """Keep paramiko transport chatter out of captured client logs."""
    caplog.set_level(logging.WARNING, logger="paramiko")
