# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Run one agent CLI invocation as a subprocess."""
import asyncio
import logging
import os
import signal
import sys
import time
from typing import Callable, List, Optional

from reviewfix.agents.registry import get_agent
from reviewfix.config import CycleConfig, ReviewOptions
from reviewfix.models import NOT_FOUND_EXIT_CODE, TIMEOUT_EXIT_CODE, AgentInvocationResult

logger = logging.getLogger(__name__)

# Stream-json events can be very long single lines.
STREAM_LINE_LIMIT = 16 * 1024 * 1024

LineCallback = Optional[Callable[[str, str], None]]


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the agent and every process it spawned."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        logger.debug("Agent process %s already exited", proc.pid)


def _echo(stream: str, text: str) -> None:
    target = sys.stderr if stream == "stderr" else sys.stdout
    target.write(text + "\n")
    target.flush()


async def _pump(
    reader: asyncio.StreamReader,
    stream: str,
    captured: List[str],
    render: Callable[[str], Optional[str]],
    on_line: Callable[[str, str], None],
) -> None:
    while True:
        raw = await reader.readline()
        if not raw:
            break
        line = raw.decode("utf-8", errors="replace").rstrip("\n")
        captured.append(line)
        text = render(line)
        if text:
            try:
                on_line(stream, text)
            except Exception as e:
                logger.debug("Output callback failed: %s", e)


async def run_agent(
    role: str,
    config: CycleConfig,
    prompt: str = "",
    review_options: Optional[ReviewOptions] = None,
    cwd: Optional[str] = None,
    timeout_s: Optional[float] = None,
    on_line: LineCallback = None,
) -> AgentInvocationResult:
    """Invoke the agent configured for *role* and capture its output.

    Output is streamed to *on_line* (default: the terminal) while captured.
    A timeout kills the process and reports exit code 124; a missing
    command reports 127.
    """
    settings = config.settings_for(role)
    spec = get_agent(settings.agent)
    argv, env = spec.build_invocation(role, prompt, settings.model, review_options)
    timeout = timeout_s if timeout_s is not None else config.iteration_timeout_s
    sink = on_line or _echo
    start = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - start) * 1000)

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LINE_LIMIT,
            # Own session: a terminal SIGINT reaches only the CLI.
            start_new_session=True,
        )
    except FileNotFoundError:
        logger.warning("Agent command not found: %s", argv[0])
        return AgentInvocationResult(
            success=False,
            exit_code=NOT_FOUND_EXIT_CODE,
            raw_output="[Error: command not found: {}]".format(argv[0]),
            duration_ms=elapsed_ms(),
        )

    stdout: List[str] = []
    stderr: List[str] = []
    try:
        await asyncio.wait_for(
            asyncio.gather(
                _pump(proc.stdout, "stdout", stdout, spec.format_line, sink),
                _pump(proc.stderr, "stderr", stderr, lambda line: line, sink),
            ),
            timeout=timeout,
        )
        exit_code = await proc.wait()
    except asyncio.TimeoutError:
        logger.warning("%s agent (%s) timed out after %.0fs", role, spec.name, timeout)
        _kill(proc)
        await proc.wait()
        output = "\n".join(stdout)
        return AgentInvocationResult(
            success=False,
            exit_code=TIMEOUT_EXIT_CODE,
            raw_output="[Timeout after {}ms]\n{}".format(int(timeout * 1000), output),
            duration_ms=elapsed_ms(),
        )
    except asyncio.CancelledError:
        _kill(proc)
        raise

    output = "\n".join(stdout)
    if stderr:
        output += "\n[stderr]\n" + "\n".join(stderr)
    return AgentInvocationResult(
        success=exit_code == 0,
        exit_code=exit_code,
        raw_output=output,
        duration_ms=elapsed_ms(),
    )
