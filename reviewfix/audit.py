# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Structured audit logging for finished review cycles."""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger("reviewfix.audit")


@dataclass
class CycleAuditEntry:
    """One review/fix cycle audit record.

    Emitted as structured JSON to the ``reviewfix.audit`` logger at INFO level.
    """
    timestamp: float = field(default_factory=time.time)
    session_id: str = ""
    project_path: str = ""
    reviewer: str = ""
    fixer: str = ""
    status: str = "failed"
    success: bool = False
    iterations: int = 0
    max_iterations: int = 0
    reason: str = ""
    duration_ms: int = 0
    log_path: Optional[str] = None
    error: Optional[str] = None

    def emit(self) -> None:
        """Emit this entry as a structured JSON log line."""
        record = {
            "event": "cycle_audit",
            "ts": self.timestamp,
            "session_id": self.session_id,
            "project_path": self.project_path,
            "reviewer": self.reviewer,
            "fixer": self.fixer,
            "status": self.status,
            "success": self.success,
            "iterations": self.iterations,
            "max_iterations": self.max_iterations,
            "reason": self.reason[:200],
            "duration_ms": self.duration_ms,
        }
        if self.log_path:
            record["log_path"] = self.log_path
        if self.error:
            record["error"] = self.error
        logger.info(json.dumps(record, ensure_ascii=False))
