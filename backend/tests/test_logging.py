"""
CallRoute - Structured Logging Tests

Run with: pytest tests/test_logging.py -v
"""

import json
import logging

from app.core.logging import (
    CallContextFilter,
    HumanReadableFormatter,
    LogContext,
    StructuredFormatter,
    mask_call_id,
    mask_sensitive_data,
    redact_numbers,
)


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("app.core.engine", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    CallContextFilter().filter(record)
    return record


class TestMasking:

    def test_mask_call_id(self):
        assert mask_call_id("CA0000000000000001") == "***0001"
        assert mask_call_id("CA1") == "***"
        assert mask_call_id(None) is None

    def test_redact_numbers_in_text(self):
        assert redact_numbers("call from +14155551234 to +14155550100") == "call from ***34 to ***00"

    def test_sensitive_keys_masked(self):
        masked = mask_sensitive_data({
            "to_number": "+14155550100",
            "caller": "***34",
            "webhook_secret": "s3cr3t-value",
            "auth_token": 12345,
            "level": "L3",
            "nested": {"dial_number": "+13125550199"},
        })

        assert masked["to_number"] == "***00"
        assert masked["caller"] == "***34"
        assert masked["webhook_secret"] == "***ue"
        assert masked["auth_token"] == "[REDACTED]"
        assert masked["level"] == "L3"
        assert masked["nested"]["dial_number"] == "***99"


class TestFormatters:

    def test_json_lines_carry_call_context(self):
        with LogContext(tenant_id="tnt_bistro", call_id="CA0000000000000001", session_id="ses_1"):
            record = _record("Escalated", event_type="escalation", data={"to_level": "L3"})

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["tenant_id"] == "tnt_bistro"
        assert entry["call_id"] == "***0001"
        assert entry["session_id"] == "ses_1"
        assert entry["event_type"] == "escalation"
        assert entry["data"] == {"to_level": "L3"}

    def test_context_is_reset_after_block(self):
        with LogContext(tenant_id="tnt_bistro"):
            pass

        entry = json.loads(StructuredFormatter().format(_record("idle")))

        assert "tenant_id" not in entry

    def test_human_readable_redacts_message(self):
        line = HumanReadableFormatter().format(_record("Dialing +13125550199"))

        assert "+13125550199" not in line
        assert "***99" in line
