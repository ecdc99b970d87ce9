from __future__ import annotations

import structlog

from datah.logging import bind_run_context, clear_run_context, get_logger


def test_get_logger_configures_structlog_when_needed() -> None:
    structlog.reset_defaults()
    assert not structlog.is_configured()

    logger = get_logger("unit-test-logger")

    assert structlog.is_configured()
    logger.info("logging_setup_probe", municipality="Águeda")


def test_run_context_is_bound_and_cleared() -> None:
    bind_run_context(job="api_build", run_id="run-1")
    assert structlog.contextvars.get_contextvars() == {"job": "api_build", "run_id": "run-1"}

    clear_run_context()
    assert structlog.contextvars.get_contextvars() == {}
