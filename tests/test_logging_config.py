"""
QAForge
Tests — structured logging formatters and request-context stamping.
"""

import json
import logging

from flask import g

from qaforge.middleware.logging_config import (
    JSONFormatter,
    ReadableFormatter,
    RequestContextFilter,
    _pick_formatter,
)


def _record(msg="Generated %d scenarios", args=(3,), **extra):
    record = logging.LogRecord("qaforge.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_pipeline_fields_promoted(self):
        line = JSONFormatter().format(_record(project_id="proj-1", purpose="scenario_generation"))
        entry = json.loads(line)
        assert entry["msg"] == "Generated 3 scenarios"
        assert entry["level"] == "INFO"
        assert entry["project_id"] == "proj-1"
        assert entry["purpose"] == "scenario_generation"
        assert "latency_ms" not in entry


class TestReadableFormatter:
    def test_tags_appended(self):
        line = ReadableFormatter().format(_record(project_id="proj-1", latency_ms=812.4))
        assert "Generated 3 scenarios" in line
        assert line.endswith("[project=proj-1 812ms]")


class TestRequestContextFilter:
    def test_outside_request_untouched(self):
        record = _record()
        assert RequestContextFilter().filter(record) is True
        assert getattr(record, "request_id", None) is None

    def test_stamps_request_and_project(self, app):
        with app.test_request_context("/api/v1/projects/proj-9/business-processes"):
            g.request_id = "abc123"
            record = _record()
            RequestContextFilter().filter(record)
        assert record.request_id == "abc123"
        assert record.project_id == "proj-9"

    def test_explicit_project_kept(self, app):
        with app.test_request_context("/api/v1/projects/proj-9/business-processes"):
            record = _record(project_id="other")
            RequestContextFilter().filter(record)
        assert record.project_id == "other"


class TestFormatterChoice:
    def test_explicit_format_wins(self, app):
        app.config["LOG_FORMAT"] = "json"
        try:
            assert isinstance(_pick_formatter(app), JSONFormatter)
        finally:
            app.config["LOG_FORMAT"] = ""

    def test_testing_defaults_to_readable(self, app):
        assert isinstance(_pick_formatter(app), ReadableFormatter)
