# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""reviewfix CLI: run review/fix cycles and inspect their sessions."""
import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import time
import uuid

_RESET = "\033[0m"
_DIM = "\033[90m"
_BOLD = "\033[1m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_CYAN = "\033[36m"

_STATUS_COLORS = {
    "completed": _GREEN,
    "running": _CYAN,
    "pending": _CYAN,
    "interrupted": _YELLOW,
    "failed": _RED,
}


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="reviewfix",
        description="Iterate an AI code reviewer and fixer over your uncommitted changes.",
    )
    parser.add_argument("--config", "-c", help="Config file (default: ~/.config/reviewfix/config.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command")

    # reviewfix run --base main
    run_p = sub.add_parser("run", help="Run a review/fix cycle in the current project")
    run_p.add_argument("path", nargs="?", help="Project path (default: current directory)")
    run_p.add_argument("--max-iterations", "-n", type=int, help="Maximum review/fix iterations")
    run_p.add_argument("--base", help="Review changes against this base branch")
    run_p.add_argument("--commit", help="Review a single commit")
    run_p.add_argument("--custom", help="Custom review instructions")
    run_p.add_argument("--reviewer", help="Reviewer agent (claude, codex, opencode, gemini)")
    run_p.add_argument("--fixer", help="Fixer agent")
    run_p.add_argument("--simplify", action="store_true", help="Run the code simplifier first")
    run_p.add_argument("--force", action="store_true", help="Run every iteration even after a stop signal")
    run_p.add_argument("--json", action="store_true", help="Print the result as JSON")

    # reviewfix status
    status_p = sub.add_parser("status", help="Show active sessions and the latest result")
    status_p.add_argument("--json", action="store_true", help="Output raw JSON")

    # reviewfix logs --follow
    logs_p = sub.add_parser("logs", help="Show the latest session log for this project")
    logs_p.add_argument("--follow", "-f", action="store_true", help="Keep printing new entries")
    logs_p.add_argument("--json", action="store_true", help="Print raw NDJSON entries")
    logs_p.add_argument("--interval", type=float, default=1.0, help="Follow poll interval in seconds")

    # reviewfix stop
    stop_p = sub.add_parser("stop", help="Interrupt the running session for this project")
    stop_p.add_argument("--all", action="store_true", help="Interrupt every active session")

    sub.add_parser("version", help="Show version and dependency versions")

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.command == "run":
        _cmd_run(args)
    elif args.command == "status":
        _cmd_status(args)
    elif args.command == "logs":
        _cmd_logs(args)
    elif args.command == "stop":
        _cmd_stop(args)
    elif args.command == "version":
        _cmd_version()
    else:
        parser.print_help()


def _setup_logging(verbose):
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s" if verbose else "%(message)s",
        stream=sys.stderr,
    )


def _load_config(args):
    from reviewfix.config import load_config
    from reviewfix.errors import ConfigError

    try:
        return load_config(args.config)
    except ConfigError as e:
        print("{}Config error: {}{}".format(_RED, e, _RESET), file=sys.stderr)
        sys.exit(2)


def _project_path(args):
    return os.path.abspath(getattr(args, "path", None) or os.getcwd())


def _colored(status):
    return "{}{}{}".format(_STATUS_COLORS.get(status, _DIM), status, _RESET)


# ── run ──


def _cmd_run(args):
    from reviewfix.config import AgentSettings, ReviewOptions
    from reviewfix.engine import CancellationToken, IterationEngine, RunOptions
    from reviewfix.errors import LockHeldError
    from reviewfix.git import get_git_branch, is_git_repository
    from reviewfix.lockfile import acquire_lock, remove_lockfile

    config = _load_config(args)
    if args.max_iterations is not None:
        config.max_iterations = max(1, args.max_iterations)
    if args.reviewer:
        config.reviewer = AgentSettings(agent=args.reviewer)
    if args.fixer:
        config.fixer = AgentSettings(agent=args.fixer)
    if args.simplify:
        config.run_simplifier = True

    project = _project_path(args)
    if not is_git_repository(project):
        print("{}Not a git repository: {}{}".format(_RED, project, _RESET), file=sys.stderr)
        sys.exit(2)

    review_options = None
    if args.base or args.commit or args.custom:
        review_options = ReviewOptions(
            base_branch=args.base, commit_sha=args.commit, custom_instructions=args.custom,
        )

    session_id = uuid.uuid4().hex[:12]
    session_name = "{}-{}".format(os.path.basename(project) or "project", session_id[:6])
    try:
        acquire_lock(config.logs_dir, project, session_name, get_git_branch(project), session_id=session_id)
    except LockHeldError as e:
        print("{}{}{}".format(_RED, e, _RESET), file=sys.stderr)
        print("{}Use `reviewfix stop` to interrupt it.{}".format(_DIM, _RESET), file=sys.stderr)
        sys.exit(1)

    token = CancellationToken()
    engine = IterationEngine(
        config,
        RunOptions(
            project_path=project,
            session_id=session_id,
            force_max_iterations=args.force,
            review_options=review_options,
        ),
        token=token,
        on_event=None if args.json else _print_event,
    )
    try:
        result = asyncio.run(_run_with_interrupt(engine, token))
    finally:
        remove_lockfile(config.logs_dir, project, expected_session_id=session_id)

    if args.json:
        print(json.dumps({
            "success": result.success,
            "final_status": result.final_status,
            "iterations": result.iterations,
            "reason": result.reason,
            "session_path": result.session_path,
        }, indent=2))
    else:
        color = _GREEN if result.success else (_YELLOW if result.final_status == "completed" else _RED)
        print()
        print("  {}{}{}{}".format(_BOLD, color, result.reason, _RESET))
        print("  {}iterations: {}  log: {}{}".format(_DIM, result.iterations, result.session_path, _RESET))
        print()
    sys.exit(0 if result.success else 1)


async def _run_with_interrupt(engine, token):
    loop = asyncio.get_running_loop()

    def _on_sigint():
        if token.cancelled:
            return
        print("\n{}Interrupt received. Completing current step...{}".format(_YELLOW, _RESET), file=sys.stderr)
        token.cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    except (NotImplementedError, RuntimeError):
        signal.signal(signal.SIGINT, lambda signum, frame: _on_sigint())
    try:
        return await engine.run()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            signal.signal(signal.SIGINT, signal.default_int_handler)


def _print_event(event):
    etype = event.get("type")
    if etype == "iteration":
        print("\n{}Iteration {}/{}{}".format(_BOLD, event["iteration"], event["max_iterations"], _RESET))
    elif etype == "phase_start":
        print("  {}Running {}...{}".format(_DIM, event["phase"], _RESET))
    elif etype == "phase_end":
        mark = "{}ok{}".format(_GREEN, _RESET) if event["success"] else "{}exit {}{}".format(
            _RED, event["exit_code"], _RESET,
        )
        print("  {} {} ({:.1f}s, {} attempt(s))".format(
            event["phase"], mark, event["duration_ms"] / 1000.0, event["attempts"],
        ))
    elif etype == "rollback":
        print("  {}Rolling back to checkpoint {}{}".format(_YELLOW, event["checkpoint"], _RESET))


# ── status ──


def _cmd_status(args):
    from reviewfix.lockfile import list_all_active_sessions
    from reviewfix.session_log import compute_session_stats, get_latest_project_log_session

    config = _load_config(args)
    project = _project_path(args)
    active = list_all_active_sessions(config.logs_dir)
    latest = get_latest_project_log_session(config.logs_dir, project)
    summary = compute_session_stats(latest) if latest else None

    if args.json:
        print(json.dumps({
            "active": [s.model_dump() for s in active],
            "latest": summary.model_dump() if summary else None,
        }, indent=2))
        return

    print()
    print("  {}Active sessions{}".format(_BOLD, _RESET))
    if not active:
        print("  {}none{}".format(_DIM, _RESET))
    for s in active:
        agent = " {}".format(s.current_agent) if s.current_agent else ""
        iteration = " #{}".format(s.iteration) if s.iteration is not None else ""
        print("  {} {} {}{}{}  {}pid {} {}{}".format(
            _colored(s.status), s.session_name, _CYAN, agent + iteration, _RESET,
            _DIM, s.pid, s.project_path, _RESET,
        ))
    print()
    if summary is None:
        print("  {}No sessions for {}{}".format(_DIM, project, _RESET))
        print()
        return
    print("  {}Latest session{}  {}".format(_BOLD, _RESET, latest.name))
    print("  status: {}  iterations: {}  fixes: {}  skipped: {}".format(
        _colored(summary.status), summary.iterations, summary.total_fixes, summary.total_skipped,
    ))
    print("  {}{}{}".format(_DIM, "  ".join(
        "{}={}".format(p, n) for p, n in sorted(summary.priority_counts.items())
    ), _RESET))
    if summary.reason:
        print("  {}".format(summary.reason))
    print()


# ── logs ──


def _format_entry(entry):
    from reviewfix.models import IterationEntry, SessionEndEntry, SystemEntry

    if isinstance(entry, SystemEntry):
        return "{}session{} {} on {}  reviewer={} fixer={} max={}".format(
            _BOLD, _RESET, entry.project_path, entry.git_branch or "-",
            entry.reviewer.agent, entry.fixer.agent, entry.max_iterations,
        )
    if isinstance(entry, IterationEntry):
        head = "{}iteration {}{}".format(_BOLD, entry.iteration, _RESET)
        if entry.error is not None:
            return "{} {}{}: {}{}".format(head, _RED, entry.error.phase, entry.error.message, _RESET)
        lines = [head]
        if entry.review is not None:
            lines.append("  review: {} finding(s), {}".format(
                len(entry.review.findings), entry.review.overall_correctness,
            ))
        elif entry.review_text:
            lines.append("  review: (unstructured, {} chars)".format(len(entry.review_text)))
        if entry.fixes is not None:
            for fix in entry.fixes.fixes:
                lines.append("  {}fixed{} [{}] {}".format(_GREEN, _RESET, fix.priority, fix.title))
            for skipped in entry.fixes.skipped:
                lines.append("  {}skipped{} {}".format(_DIM, _RESET, skipped.title))
            lines.append("  stop_iteration: {}".format(entry.fixes.stop_iteration))
        return "\n".join(lines)
    if isinstance(entry, SessionEndEntry):
        return "{}end{} {} - {}".format(_BOLD, _RESET, _colored(entry.status), entry.reason)
    raise TypeError("Unknown log entry type: {!r}".format(type(entry).__name__))


def _print_entries(entries, as_json):
    from reviewfix.models import dump_log_entry

    for entry in entries:
        print(dump_log_entry(entry) if as_json else _format_entry(entry))


def _cmd_logs(args):
    from reviewfix.models import SessionEndEntry
    from reviewfix.session_log import get_latest_project_log_session, read_log_incremental

    config = _load_config(args)
    project = _project_path(args)
    session = get_latest_project_log_session(config.logs_dir, project)
    if session is None:
        print("{}No sessions for {}{}".format(_DIM, project, _RESET), file=sys.stderr)
        sys.exit(1)

    result = read_log_incremental(session.path)
    _print_entries(result.entries, args.json)
    if not args.follow:
        return

    ended = any(isinstance(e, SessionEndEntry) for e in result.entries)
    state = result.state
    try:
        while not ended:
            time.sleep(args.interval)
            result = read_log_incremental(session.path, state)
            if result.reset:
                print("{}-- log rewritten, reloading --{}".format(_DIM, _RESET))
            _print_entries(result.entries, args.json)
            state = result.state
            ended = any(isinstance(e, SessionEndEntry) for e in result.entries)
    except KeyboardInterrupt:
        print()


# ── stop ──


def _cmd_stop(args):
    from reviewfix.lockfile import (
        cleanup_stale_lockfile,
        list_all_active_sessions,
        read_lockfile,
        remove_all_lockfiles,
    )

    config = _load_config(args)
    if args.all:
        sessions = list_all_active_sessions(config.logs_dir)
        for s in sessions:
            _interrupt(s.pid, s.session_name)
        removed = remove_all_lockfiles(config.logs_dir)
        print("Stopped {} session(s), removed {} lock file(s).".format(len(sessions), removed))
        return

    project = _project_path(args)
    if cleanup_stale_lockfile(config.logs_dir, project):
        print("{}Removed stale lock for {}{}".format(_DIM, project, _RESET))
        return
    lock = read_lockfile(config.logs_dir, project)
    if lock is None or lock.status not in ("pending", "running"):
        print("No active session for {}".format(project))
        return
    _interrupt(lock.pid, lock.session_name)


def _interrupt(pid, name):
    try:
        os.kill(pid, signal.SIGINT)
    except ProcessLookupError:
        print("{}Session {} (pid {}) already exited{}".format(_DIM, name, pid, _RESET))
        return
    except PermissionError:
        print("{}Not allowed to signal pid {}{}".format(_RED, pid, _RESET), file=sys.stderr)
        return
    print("Sent interrupt to {} (pid {}). It stops at the next phase boundary.".format(name, pid))


# ── version ──


def _cmd_version():
    from reviewfix import __version__

    print()
    print("  {}{}reviewfix v{}{}".format(_BOLD, _CYAN, __version__, _RESET))
    print()
    for label, pkg_name in (("pydantic", "pydantic"), ("pyyaml", "PyYAML")):
        ver = _get_pkg_version(pkg_name)
        if ver:
            print("  {}\u2714{} {} {}{}{}".format(_GREEN, _RESET, label, _DIM, ver, _RESET))
        else:
            print("  {}\u2718 {}{}".format(_DIM, label, _RESET))
    print()


def _get_pkg_version(pkg_name):
    """Get package version from importlib.metadata."""
    from importlib.metadata import PackageNotFoundError, version
    try:
        return version(pkg_name)
    except PackageNotFoundError:
        return None


if __name__ == "__main__":
    main()
