"""
Unit tests for the logging helpers.
"""

import json
import logging

import pytest
from rich.logging import RichHandler

from refdata_migration.utils.logging import (
    REDACTED,
    configure_logging,
    get_logger,
    payload_logging_enabled,
    sanitize_payload,
    truncate_payload,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def root_logging():
    """Restore the root logger after configure_logging replaced its handlers"""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield root_logger
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(level)


class TestSanitizePayload:
    """Tests for redaction of payloads before they are logged"""

    def test_redacts_sensitive_keys_at_any_depth(self):
        payload = {
            "name": "Oregon",
            "Authorization": "Bearer abc",
            "records": [{"api_key": "k", "code": "OR"}],
            "nested": {"db_password": "p"},
        }

        sanitized = sanitize_payload(payload)

        assert sanitized["name"] == "Oregon"
        assert sanitized["Authorization"] == REDACTED
        assert sanitized["records"] == [{"api_key": REDACTED, "code": "OR"}]
        assert sanitized["nested"]["db_password"] == REDACTED
        assert payload["Authorization"] == "Bearer abc"

    def test_depth_limit(self):
        assert sanitize_payload({"a": {"b": 1}}, max_depth=1) == {"a": "[MAX_DEPTH_EXCEEDED]"}


class TestTruncatePayload:
    """Tests for payload truncation"""

    def test_short_payload_is_plain_json(self):
        assert json.loads(truncate_payload({"code": "OR"})) == {"code": "OR"}

    def test_long_payload_is_cut(self):
        text = truncate_payload({"name": "x" * 500}, max_size=100)

        assert text.startswith('{"name": "xxx')
        assert text.endswith("chars]")
        assert "truncated" in text


class TestConfigureLogging:
    """Tests for handler setup"""

    def test_console_only(self, root_logging):
        configure_logging(level="info")

        assert len(root_logging.handlers) == 1
        assert isinstance(root_logging.handlers[0], RichHandler)
        assert root_logging.level == logging.INFO

    def test_json_file_receives_debug_events(self, root_logging, tmp_path):
        log_file = tmp_path / "logs" / "run.log"

        configure_logging(level="WARNING", log_format="json", log_file=str(log_file))
        get_logger("refdata_migration.tests").debug("records_extracted", entity_type="city", count=3)
        for handler in root_logging.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["event"] == "records_extracted"
        assert entry["entity_type"] == "city"
        assert entry["level"] == "debug"
        assert entry["app"] == "refdata-bridge"
        assert root_logging.level == logging.DEBUG

    def test_reconfiguring_replaces_handlers(self, root_logging, tmp_path):
        configure_logging(log_file=str(tmp_path / "a.log"))
        configure_logging(log_file=str(tmp_path / "b.log"))

        files = [h.baseFilename for h in root_logging.handlers if isinstance(h, logging.FileHandler)]
        assert files == [str(tmp_path / "b.log")]

    def test_payload_logging_needs_debug(self, root_logging):
        configure_logging(level="WARNING")
        assert not payload_logging_enabled("refdata_migration.client", True)
        assert not payload_logging_enabled("refdata_migration.client", False)

        configure_logging(level="DEBUG")
        assert payload_logging_enabled("refdata_migration.client", True)
