"""Tests for resume_intake.logging."""

from __future__ import annotations

import logging

import structlog

from resume_intake.logging import bind_run, setup_logging, unbind_run


class TestSetupLogging:
    def test_json_mode(self):
        setup_logging(json=True, level="INFO")
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1

    def test_console_mode(self):
        setup_logging(json=False, level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_level_case_insensitive(self):
        setup_logging(level="warning")
        assert logging.getLogger().level == logging.WARNING

    def test_quiets_http_and_aws_loggers(self):
        setup_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_replaces_existing_handlers(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())
        root.addHandler(logging.StreamHandler())
        setup_logging()
        assert len(root.handlers) == 1


class TestRunBinding:
    def test_bind_and_unbind(self):
        bind_run("run-1", job_id=7)
        try:
            context = structlog.contextvars.get_contextvars()
            assert context["run_id"] == "run-1"
            assert context["job_id"] == 7
        finally:
            unbind_run()
        context = structlog.contextvars.get_contextvars()
        assert "run_id" not in context
        assert "job_id" not in context
