# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Append-only NDJSON session log with a cached summary and incremental reads.

Layout: ``<logs_dir>/<sanitized-project>/<timestamp>[_<branch>].jsonl`` plus
``<timestamp>[_<branch>].summary.json`` next to it. The summary cache is a
pure function of the log and is rebuilt whenever it looks stale.
"""
import asyncio
import hashlib
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from reviewfix.config import LOGS_DIR
from reviewfix.models import (
    IterationEntry,
    SessionEndEntry,
    SessionSummary,
    SystemEntry,
    dump_log_entry,
    now_ms,
    parse_log_entry,
)

logger = logging.getLogger(__name__)

LOG_SUFFIX = ".jsonl"
SUMMARY_SUFFIX = ".summary.json"
BOUNDARY_PROBE_BYTES = 64

_UNSAFE_CHARS_RE = re.compile(r'[/\\:*?"<>|]')
_WHITESPACE_RE = re.compile(r"\s+")
_HYPHENS_RE = re.compile(r"-+")


# ── Naming ────────────────────────────────────────────────────


def sanitize_for_filename(value: str) -> str:
    text = _UNSAFE_CHARS_RE.sub("-", value)
    text = _WHITESPACE_RE.sub("-", text)
    text = _HYPHENS_RE.sub("-", text)
    return text.strip("-").lower()


def get_project_name(project_path: str) -> str:
    return sanitize_for_filename(project_path) or "unknown-project"


def generate_log_filename(timestamp: datetime, git_branch: Optional[str] = None) -> str:
    stamp = timestamp.strftime("%Y-%m-%dT%H-%M-%S")
    if git_branch:
        return "{}_{}{}".format(stamp, sanitize_for_filename(git_branch), LOG_SUFFIX)
    return stamp + LOG_SUFFIX


def summary_path_for(log_path: str) -> str:
    if log_path.endswith(LOG_SUFFIX):
        return log_path[:-len(LOG_SUFFIX)] + SUMMARY_SUFFIX
    return log_path + SUMMARY_SUFFIX


def create_log_session(
    logs_dir: Optional[str],
    project_path: str,
    git_branch: Optional[str] = None,
) -> str:
    """Create the project directory and return the path of a new log file."""
    project_dir = Path(logs_dir or LOGS_DIR) / get_project_name(project_path)
    project_dir.mkdir(parents=True, exist_ok=True)
    filename = generate_log_filename(datetime.now(timezone.utc), git_branch)
    return str(project_dir / filename)


# ── Summary rollup ────────────────────────────────────────────


def _new_summary(log_path: str) -> SessionSummary:
    return SessionSummary(
        log_path=log_path,
        summary_path=summary_path_for(log_path),
        project_name=os.path.basename(os.path.dirname(log_path)) or "unknown-project",
    )


def _apply_entry(summary: SessionSummary, entry: Any) -> None:
    """Fold one log entry into *summary* in place."""
    if isinstance(entry, SystemEntry):
        summary.started_at = entry.timestamp
        summary.project_path = entry.project_path
        summary.git_branch = entry.git_branch
        if summary.status == "unknown":
            summary.status = "running"
    elif isinstance(entry, IterationEntry):
        summary.iterations += 1
        summary.has_iteration = True
        if entry.fixes is not None:
            summary.total_fixes += len(entry.fixes.fixes)
            summary.total_skipped += len(entry.fixes.skipped)
            for fix in entry.fixes.fixes:
                summary.priority_counts[fix.priority] = summary.priority_counts.get(fix.priority, 0) + 1
            summary.stop_iteration = entry.fixes.stop_iteration
        else:
            summary.stop_iteration = None
        if entry.duration_ms is not None:
            summary.total_duration_ms = (summary.total_duration_ms or 0) + entry.duration_ms
        if entry.error is not None:
            interrupted = "interrupt" in entry.error.message.lower()
            summary.status = "interrupted" if interrupted else "failed"
        else:
            summary.status = "running"
    elif isinstance(entry, SessionEndEntry):
        summary.status = entry.status
        summary.reason = entry.reason
        summary.ended_at = entry.timestamp
    else:
        raise TypeError("Unknown log entry type: {!r}".format(type(entry).__name__))
    summary.updated_at = now_ms()


def summarize_entries(log_path: str, entries: List[Any]) -> SessionSummary:
    summary = _new_summary(log_path)
    for entry in entries:
        _apply_entry(summary, entry)
    return summary


def atomic_write_text(path: str, content: str) -> None:
    """Write via a temp file in the same directory plus ``os.replace``."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=directory,
        prefix=".{}.".format(os.path.basename(path)),
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _write_summary(summary: SessionSummary) -> None:
    atomic_write_text(summary.summary_path, summary.model_dump_json(indent=2))


# ── Writer ────────────────────────────────────────────────────


@dataclass
class _LogWriter:
    """In-process view of a log this process is appending to."""
    log_path: str
    offset: int
    summary: SessionSummary

    def is_valid(self) -> bool:
        try:
            return os.path.getsize(self.log_path) == self.offset
        except OSError:
            return False


_writers: Dict[str, _LogWriter] = {}
_write_locks: Dict[str, asyncio.Lock] = {}


def _get_write_lock(log_path: str) -> asyncio.Lock:
    """Get or create the per-path append lock."""
    if log_path not in _write_locks:
        _write_locks[log_path] = asyncio.Lock()
    return _write_locks[log_path]


def _has_torn_tail(log_path: str) -> bool:
    """True when the file is non-empty and its last byte is not a newline."""
    try:
        with open(log_path, "rb") as handle:
            handle.seek(0, os.SEEK_END)
            if handle.tell() == 0:
                return False
            handle.seek(-1, os.SEEK_END)
            return handle.read(1) != b"\n"
    except FileNotFoundError:
        return False


async def append_log(log_path: str, entry: Any) -> None:
    """Append *entry* as one line and keep the summary cache in sync.

    Appends to the same path are serialized. With a live writer the summary
    is updated from the entry alone; otherwise it is rebuilt from the file.
    A ``SessionEndEntry`` closes the writer.
    """
    log_path = os.path.abspath(log_path)
    data = (dump_log_entry(entry) + "\n").encode("utf-8")
    async with _get_write_lock(log_path):
        writer = _writers.get(log_path)
        if writer is not None and not writer.is_valid():
            logger.info("Log %s changed underneath its writer, rebuilding summary", log_path)
            _writers.pop(log_path, None)
            writer = None

        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        if writer is None and _has_torn_tail(log_path):
            logger.warning("Log %s ends in a partial line, starting a new line", log_path)
            data = b"\n" + data
        with open(log_path, "ab") as handle:
            handle.write(data)

        if writer is None:
            summary = summarize_entries(log_path, read_log(log_path))
            writer = _LogWriter(log_path=log_path, offset=os.path.getsize(log_path), summary=summary)
        else:
            _apply_entry(writer.summary, entry)
            writer.offset += len(data)

        _write_summary(writer.summary)

        if isinstance(entry, SessionEndEntry):
            _writers.pop(log_path, None)
        else:
            _writers[log_path] = writer


def has_active_writer(log_path: str) -> bool:
    return os.path.abspath(log_path) in _writers


# ── Reading ───────────────────────────────────────────────────


def _parse_lines(chunk: bytes, log_path: str) -> List[Any]:
    entries = []
    for number, raw in enumerate(chunk.split(b"\n"), 1):
        line = raw.strip()
        if not line:
            continue
        try:
            entries.append(parse_log_entry(line))
        except ValidationError as e:
            logger.warning("Skipping unreadable line %d in %s: %s", number, log_path, e.errors()[:1])
    return entries


def read_log(log_path: str) -> List[Any]:
    """Every entry in the log. Blank and torn lines are skipped."""
    try:
        with open(log_path, "rb") as handle:
            content = handle.read()
    except FileNotFoundError:
        return []
    return _parse_lines(content, log_path)


@dataclass(frozen=True)
class LogIncrementalState:
    """Read cursor for :func:`read_log_incremental`.

    ``offset`` counts every byte consumed, including the unterminated tail
    held in ``partial``.
    """
    offset: int = 0
    size: int = 0
    mtime_ns: int = 0
    boundary_hash: str = ""
    partial: bytes = b""


@dataclass
class LogIncrementalResult:
    entries: List[Any] = field(default_factory=list)
    state: LogIncrementalState = field(default_factory=LogIncrementalState)
    reset: bool = False


def _probe_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:16]


def _read_probe(handle, offset: int) -> bytes:
    start = max(0, offset - BOUNDARY_PROBE_BYTES)
    handle.seek(start)
    return handle.read(offset - start)


def _split_complete(buffer: bytes) -> Tuple[bytes, bytes]:
    cut = buffer.rfind(b"\n")
    if cut < 0:
        return b"", buffer
    return buffer[:cut + 1], buffer[cut + 1:]


def read_log_incremental(
    log_path: str,
    state: Optional[LogIncrementalState] = None,
) -> LogIncrementalResult:
    """Return entries appended since *state*.

    When the file only grew, just the new bytes are read. When it shrank,
    got older, or the bytes before the cursor changed, the whole file is
    read again and ``reset`` is set so callers can drop what they had.
    """
    try:
        stat = os.stat(log_path)
    except FileNotFoundError:
        return LogIncrementalResult(reset=bool(state and state.offset))

    with open(log_path, "rb") as handle:
        reset = False
        if state is not None:
            if stat.st_size < state.offset or stat.st_mtime_ns < state.mtime_ns:
                reset = True
            elif _probe_hash(_read_probe(handle, state.offset)) != state.boundary_hash:
                reset = True
            if reset:
                logger.debug("Log %s was rewritten, re-reading from start", log_path)

        if state is None or reset:
            offset, partial = 0, b""
        else:
            offset, partial = state.offset, state.partial

        handle.seek(offset)
        data = handle.read()
        new_offset = offset + len(data)
        complete, tail = _split_complete(partial + data)
        probe = _read_probe(handle, new_offset)

    new_state = LogIncrementalState(
        offset=new_offset,
        size=new_offset,
        mtime_ns=stat.st_mtime_ns,
        boundary_hash=_probe_hash(probe),
        partial=tail,
    )
    return LogIncrementalResult(
        entries=_parse_lines(complete, log_path),
        state=new_state,
        reset=reset,
    )


# ── Session listing ───────────────────────────────────────────


@dataclass
class LogSession:
    path: str
    name: str
    project_name: str
    timestamp: int


def _sessions_in_dir(project_dir: Path, project_name: str) -> List[LogSession]:
    sessions = []
    for entry in project_dir.iterdir():
        if not entry.is_file() or not entry.name.endswith(LOG_SUFFIX):
            continue
        sessions.append(LogSession(
            path=str(entry),
            name=entry.name,
            project_name=project_name,
            timestamp=int(entry.stat().st_mtime * 1000),
        ))
    sessions.sort(key=lambda s: s.timestamp, reverse=True)
    return sessions


def list_log_sessions(logs_dir: Optional[str] = None) -> List[LogSession]:
    """All sessions across projects, newest first."""
    root = Path(logs_dir or LOGS_DIR)
    if not root.is_dir():
        return []
    sessions: List[LogSession] = []
    for project_dir in root.iterdir():
        if project_dir.is_dir():
            sessions.extend(_sessions_in_dir(project_dir, project_dir.name))
    sessions.sort(key=lambda s: s.timestamp, reverse=True)
    return sessions


def list_project_log_sessions(logs_dir: Optional[str], project_path: str) -> List[LogSession]:
    project_name = get_project_name(project_path)
    project_dir = Path(logs_dir or LOGS_DIR) / project_name
    if not project_dir.is_dir():
        return []
    return _sessions_in_dir(project_dir, project_name)


def get_latest_project_log_session(logs_dir: Optional[str], project_path: str) -> Optional[LogSession]:
    sessions = list_project_log_sessions(logs_dir, project_path)
    return sessions[0] if sessions else None


def delete_log_session(log_path: str) -> bool:
    """Remove a log and its summary cache. Returns False if the log was absent."""
    log_path = os.path.abspath(log_path)
    _writers.pop(log_path, None)
    summary_path = summary_path_for(log_path)
    if os.path.exists(summary_path):
        os.unlink(summary_path)
    if not os.path.exists(log_path):
        return False
    os.unlink(log_path)
    return True


def compute_session_stats(session: LogSession) -> SessionSummary:
    """Summary for *session*, served from the cache unless it is older than the log."""
    summary_path = summary_path_for(session.path)
    try:
        log_mtime = os.stat(session.path).st_mtime_ns
        if os.stat(summary_path).st_mtime_ns >= log_mtime:
            with open(summary_path, "r", encoding="utf-8") as handle:
                return SessionSummary.model_validate_json(handle.read())
    except FileNotFoundError:
        pass
    except ValidationError as e:
        logger.warning("Discarding corrupt summary cache %s: %s", summary_path, e.errors()[:1])

    summary = summarize_entries(session.path, read_log(session.path))
    if os.path.exists(session.path):
        _write_summary(summary)
    return summary
