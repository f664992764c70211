"""Tests for logging and error helpers."""

import json
import logging

import pytest

from codelabel.errors import CodelabelError, ErrorCode, clamp_confidence, safe_truncate
from codelabel.logging import JSONFormatter, run_context, set_correlation_id, setup_logging


@pytest.fixture
def json_logs(capsys):
    """Route codelabel logs to stderr as JSON and return a line reader."""
    logger = setup_logging(json_format=True)

    def read():
        return [json.loads(line) for line in capsys.readouterr().err.strip().splitlines()]

    yield read
    logger.handlers.clear()


class TestJSONFormatter:
    """Tests for structured log output."""

    def test_extra_fields_included(self):
        """Test fields passed via extra= appear in the JSON line."""
        record = logging.LogRecord("codelabel.test", logging.INFO, __file__, 1, "hello %s", ("x",), None)
        record.pattern = "reactHook"
        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello x"
        assert data["level"] == "INFO"
        assert data["pattern"] == "reactHook"
        assert "lineno" not in data

    def test_run_fields_omitted_when_unset(self):
        """Test a record outside any run has no activity or version keys."""
        record = logging.LogRecord("codelabel.test", logging.INFO, __file__, 1, "idle", (), None)
        data = json.loads(JSONFormatter().format(record))
        assert "activity_id" not in data
        assert "config_version" not in data


class TestRunContext:
    """Tests for tagging records with the active refinement run."""

    def test_correlation_id_on_child_loggers(self, json_logs):
        """Test records from child loggers carry the correlation id."""
        set_correlation_id("run-1")
        logging.getLogger("codelabel.heuristics.store").warning("reload failed")
        assert json_logs()[-1]["correlation_id"] == "run-1"

    def test_run_fields_stamped(self, json_logs):
        """Test records inside a run carry its activity and config version."""
        with run_context("calibration", config_version="1.2.0", correlation_id="cal-3"):
            logging.getLogger("codelabel.refinement.activities").warning("no changes")
        line = json_logs()[-1]

        assert line["activity_id"] == "calibration"
        assert line["config_version"] == "1.2.0"
        assert line["correlation_id"] == "cal-3"

    def test_context_restored_after_run(self, json_logs):
        """Test leaving a run drops its fields from later records."""
        set_correlation_id("outer")
        with run_context("inference", config_version="2.0.0"):
            pass
        logging.getLogger("codelabel.service").warning("after")
        line = json_logs()[-1]

        assert line["correlation_id"] == "outer"
        assert "activity_id" not in line
        assert "config_version" not in line

    def test_context_restored_on_error(self, json_logs):
        """Test a run that raises still restores the previous context."""
        set_correlation_id("outer")
        with pytest.raises(RuntimeError):
            with run_context("calibration", config_version="1.0.0"):
                raise RuntimeError("boom")
        logging.getLogger("codelabel.service").warning("after")
        assert json_logs()[-1]["correlation_id"] == "outer"

    def test_explicit_extra_wins(self, json_logs):
        """Test an activity id passed through extra= is not overwritten."""
        with run_context("calibration"):
            logging.getLogger("codelabel.refinement.proposals").warning(
                "rate exceeded", extra={"activity_id": "inference"}
            )
        assert json_logs()[-1]["activity_id"] == "inference"


class TestErrors:
    """Tests for the error helpers."""

    def test_to_dict(self):
        """Test structured error serialisation."""
        error = CodelabelError(
            code=ErrorCode.CONFIG_INVALID, message="bad", details={"version": "1.0.0"}
        )
        assert error.to_dict() == {
            "code": "config_invalid",
            "message": "bad",
            "details": {"version": "1.0.0"},
            "cause": None,
        }
        assert str(error) == "[config_invalid] bad (version=1.0.0)"

    def test_clamp_confidence(self, caplog):
        """Test out-of-range confidences are clamped and the source is logged."""
        with caplog.at_level(logging.WARNING, logger="codelabel.errors"):
            assert clamp_confidence(1.2, "reactHook") == 1.0
        assert clamp_confidence(-0.5) == 0.0
        assert clamp_confidence(0.4) == 0.4
        assert "reactHook" in caplog.text

    def test_safe_truncate(self):
        """Test truncation with a suffix."""
        assert safe_truncate("abcdefghij", 6) == "abc..."
        assert safe_truncate("abc", 6) == "abc"
        assert safe_truncate("abcdef", 2) == ".."
