# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for the cycle audit log record."""
import json
import logging

from reviewfix.audit import CycleAuditEntry


class TestCycleAuditEntry:

    def test_emit_structured_json(self, caplog):
        entry = CycleAuditEntry(
            session_id="abc", project_path="/work/app", reviewer="codex", fixer="claude",
            status="completed", success=True, iterations=2, max_iterations=5,
            reason="No issues found", duration_ms=1200, log_path="/logs/s.jsonl",
        )
        with caplog.at_level(logging.INFO, logger="reviewfix.audit"):
            entry.emit()
        record = json.loads(caplog.records[-1].getMessage())
        assert record["event"] == "cycle_audit"
        assert record["success"] is True
        assert record["log_path"] == "/logs/s.jsonl"
        assert "error" not in record

    def test_reason_truncated_and_error_included(self, caplog):
        entry = CycleAuditEntry(reason="x" * 500, error="boom")
        with caplog.at_level(logging.INFO, logger="reviewfix.audit"):
            entry.emit()
        record = json.loads(caplog.records[-1].getMessage())
        assert len(record["reason"]) == 200
        assert record["error"] == "boom"
        assert record["status"] == "failed"
