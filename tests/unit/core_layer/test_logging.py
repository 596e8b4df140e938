"""
Unit Tests for Logging Module

Tests logger configuration, job context, processors, and logging utilities.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from genguard.core.logging.logger import (
    add_job_id,
    add_log_level_name,
    add_timestamp,
    clear_job_id,
    get_job_id,
    get_logger,
    log_stage,
    redact_pii,
    set_job_id,
    setup_logging,
)


@pytest.mark.unit
class TestLoggerCreation:
    def test_get_logger_returns_logger_instance(self):
        logger = get_logger(__name__)
        assert hasattr(logger, "info")

    def test_setup_logging_accepts_both_formats(self):
        setup_logging(log_level="DEBUG", log_format="console")
        setup_logging(log_level="info", log_format="json")
        get_logger("test").info("configured")


@pytest.mark.unit
class TestJobContext:
    def test_set_and_clear_job_id(self):
        token = set_job_id("job-1")
        assert get_job_id() == "job-1"

        clear_job_id(token)

        assert get_job_id() is None

    def test_token_restores_outer_job(self):
        outer = set_job_id("outer")
        inner = set_job_id("inner")

        clear_job_id(inner)
        assert get_job_id() == "outer"
        clear_job_id(outer)

    def test_clear_without_token(self):
        set_job_id("job-1")
        clear_job_id()
        assert get_job_id() is None

    @pytest.mark.asyncio
    async def test_job_id_isolated_between_tasks(self):
        seen = {}

        async def run(job_id):
            token = set_job_id(job_id)
            await asyncio.sleep(0)
            seen[job_id] = get_job_id()
            clear_job_id(token)

        await asyncio.gather(run("job-a"), run("job-b"))

        assert seen == {"job-a": "job-a", "job-b": "job-b"}


@pytest.mark.unit
class TestProcessors:
    def test_add_job_id_from_context(self):
        token = set_job_id("job-7")
        try:
            event = add_job_id(None, "info", {"event": "x"})
        finally:
            clear_job_id(token)
        assert event["job_id"] == "job-7"

    def test_explicit_job_id_wins(self):
        token = set_job_id("job-7")
        try:
            event = add_job_id(None, "info", {"event": "x", "job_id": "job-8"})
        finally:
            clear_job_id(token)
        assert event["job_id"] == "job-8"

    def test_no_job_id_outside_context(self):
        assert "job_id" not in add_job_id(None, "info", {"event": "x"})

    def test_add_timestamp(self):
        assert "T" in add_timestamp(None, "info", {"event": "x"})["timestamp"]

    def test_redact_pii(self):
        event = redact_pii(None, "info", {"event": "user jane.doe@example.com used sk-abc123"})
        assert event["event"] == "user [EMAIL] used [REDACTED]"

    def test_redact_pii_ignores_non_strings(self):
        assert redact_pii(None, "info", {"event": 42})["event"] == 42

    def test_add_log_level_name(self):
        assert add_log_level_name(None, "warning", {"level": "warning"})["level"] == "WARNING"


@pytest.mark.unit
class TestLogStage:
    def test_log_stage_uses_level_and_stage(self):
        logger = MagicMock()

        log_stage(logger, "Q.2_CLAIM", "Job claimed", level="WARNING", job_id="job-1")

        logger.warning.assert_called_once_with("Job claimed", stage="Q.2_CLAIM", job_id="job-1")
