"""Shared pytest fixtures."""

import pytest

from nomad_prometheus_exporter import server


@pytest.fixture(autouse=True)
def _keep_default_logging(monkeypatch):
    """Stop tests from installing the logfmt pipeline.

    configure_logging caches loggers on first use, after which
    structlog.testing.capture_logs no longer sees their events.
    """
    monkeypatch.setattr(server, "configure_logging", lambda log_level_name: None)
