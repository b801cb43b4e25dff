# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Pydantic models for the review/fix cycle.

Summaries parsed from agent output, the session log entry union, the lock
file payload, and the per-invocation agent result all live here so that the
engine, the log, and the CLI share one wire format.
"""
import time
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

Priority = Literal["P0", "P1", "P2", "P3"]
FixDecision = Literal["NO_CHANGES_NEEDED", "APPLY_SELECTIVELY", "APPLY_MOST"]
OverallCorrectness = Literal["patch is correct", "patch is incorrect"]
AgentRole = Literal["reviewer", "fixer", "simplifier"]
ErrorPhase = Literal["reviewer", "fixer", "simplifier", "checkpoint"]
EndStatus = Literal["completed", "failed", "interrupted"]
DerivedRunStatus = Literal["running", "completed", "failed", "interrupted", "unknown"]
LockStatus = Literal["pending", "running", "completed", "failed"]

PRIORITIES: List[str] = ["P0", "P1", "P2", "P3"]

# Exit code reported for an invocation killed by its timeout.
TIMEOUT_EXIT_CODE = 124
# Exit code reported when the agent command could not be started at all.
NOT_FOUND_EXIT_CODE = 127


def now_ms() -> int:
    return int(time.time() * 1000)


def empty_priority_counts() -> Dict[str, int]:
    return {p: 0 for p in PRIORITIES}


class _Payload(BaseModel):
    """Agent-produced payload: unknown fields are dropped, not rejected."""
    model_config = ConfigDict(extra="ignore")


# ── Review summary ────────────────────────────────────────────


class LineRange(_Payload):
    start: int
    end: int


class CodeLocation(_Payload):
    absolute_file_path: str
    line_range: LineRange


class Finding(_Payload):
    title: str
    body: str
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    priority: Optional[int] = Field(None, ge=0, le=3)
    code_location: CodeLocation


class ReviewSummary(_Payload):
    """Structured envelope emitted by the reviewer."""
    findings: List[Finding]
    overall_correctness: OverallCorrectness
    overall_explanation: str
    overall_confidence_score: float = Field(..., ge=0.0, le=1.0)


# ── Fix summary ───────────────────────────────────────────────


class FixEntry(_Payload):
    id: int
    title: str
    priority: Priority
    file: Optional[str] = None
    claim: str
    evidence: str
    fix: str


class SkippedEntry(_Payload):
    id: int
    title: str
    reason: str


class FixSummary(_Payload):
    """Structured envelope emitted by the fixer.

    ``stop_iteration`` is the authoritative "no more issues" signal.
    """
    decision: FixDecision
    fixes: List[FixEntry]
    skipped: List[SkippedEntry]
    stop_iteration: bool = False

    @model_validator(mode="after")
    def _check_ids(self) -> "FixSummary":
        fix_ids = [f.id for f in self.fixes]
        skipped_ids = [s.id for s in self.skipped]
        if len(set(fix_ids)) != len(fix_ids):
            raise ValueError("duplicate id in fixes")
        if len(set(skipped_ids)) != len(skipped_ids):
            raise ValueError("duplicate id in skipped")
        overlap = set(fix_ids) & set(skipped_ids)
        if overlap:
            raise ValueError("ids present in both fixes and skipped: {}".format(sorted(overlap)))
        return self


# ── Agent invocation ──────────────────────────────────────────


class AgentInvocationResult(BaseModel):
    """Outcome of one external agent process call."""
    model_config = ConfigDict(frozen=True)

    success: bool
    exit_code: int
    raw_output: str = ""
    duration_ms: int = 0


class AgentSettingsRecord(BaseModel):
    """Agent settings as recorded in the session log."""
    agent: str
    model: Optional[str] = None


class ReviewOptionsRecord(BaseModel):
    base_branch: Optional[str] = None
    commit_sha: Optional[str] = None
    custom_instructions: Optional[str] = None


# ── Session log entries ───────────────────────────────────────


class IterationError(BaseModel):
    phase: ErrorPhase
    message: str
    exit_code: Optional[int] = None


class RollbackOutcome(BaseModel):
    attempted: bool = True
    success: bool
    error: Optional[str] = None


class SystemEntry(BaseModel):
    type: Literal["system"] = "system"
    timestamp: int = Field(default_factory=now_ms)
    session_id: Optional[str] = None
    project_path: str
    git_branch: Optional[str] = None
    reviewer: AgentSettingsRecord
    fixer: AgentSettingsRecord
    simplifier: Optional[AgentSettingsRecord] = None
    max_iterations: int
    review_options: Optional[ReviewOptionsRecord] = None


class IterationEntry(BaseModel):
    type: Literal["iteration"] = "iteration"
    timestamp: int = Field(default_factory=now_ms)
    iteration: int
    duration_ms: Optional[int] = None
    error: Optional[IterationError] = None
    review: Optional[ReviewSummary] = None
    review_text: Optional[str] = None
    fixes: Optional[FixSummary] = None
    rollback: Optional[RollbackOutcome] = None


class SessionEndEntry(BaseModel):
    type: Literal["session_end"] = "session_end"
    timestamp: int = Field(default_factory=now_ms)
    status: EndStatus
    reason: str
    iterations: int


LogEntry = Annotated[
    Union[SystemEntry, IterationEntry, SessionEndEntry],
    Field(discriminator="type"),
]

_LOG_ENTRY_ADAPTER: TypeAdapter = TypeAdapter(LogEntry)


def parse_log_entry(line: Union[str, bytes]) -> Any:
    """Parse one NDJSON line into the matching entry model."""
    return _LOG_ENTRY_ADAPTER.validate_json(line)


def dump_log_entry(entry: BaseModel) -> str:
    """Serialize an entry as a single JSON line (no trailing newline)."""
    return entry.model_dump_json(exclude_none=True)


# ── Derived rollups ───────────────────────────────────────────


class SessionSummary(BaseModel):
    """Cached rollup of a session log. Always reconstructible from the log."""
    schema_version: Literal[1] = 1
    log_path: str
    summary_path: str
    project_name: str
    project_path: Optional[str] = None
    git_branch: Optional[str] = None
    started_at: Optional[int] = None
    updated_at: int = Field(default_factory=now_ms)
    ended_at: Optional[int] = None
    status: DerivedRunStatus = "unknown"
    reason: Optional[str] = None
    iterations: int = 0
    has_iteration: bool = False
    stop_iteration: Optional[bool] = None
    total_fixes: int = 0
    total_skipped: int = 0
    priority_counts: Dict[str, int] = Field(default_factory=empty_priority_counts)
    total_duration_ms: Optional[int] = None


class LockData(BaseModel):
    """Contents of a per-project lock file."""
    schema_version: int = 1
    session_id: str
    session_name: str
    start_time: int = Field(default_factory=now_ms)
    last_heartbeat: int = Field(default_factory=now_ms)
    pid: int
    project_path: str
    branch: str = "default"
    status: LockStatus = "pending"
    current_agent: Optional[AgentRole] = None
    iteration: Optional[int] = None
