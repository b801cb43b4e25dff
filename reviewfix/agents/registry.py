# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Registry of supported agent CLIs.

Each entry knows how to build the command line for a role, how to pull the
final answer out of the CLI's output, and how to render a streamed line for
the terminal.
"""
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from reviewfix.config import ReviewOptions
from reviewfix.errors import ConfigError

logger = logging.getLogger(__name__)

ArgsBuilder = Callable[[str, str, Optional[str], Optional[ReviewOptions]], List[str]]


@dataclass(frozen=True)
class AgentSpec:
    name: str
    command: str
    build_args: ArgsBuilder
    extract_result: Callable[[str], Optional[str]]
    uses_jsonl: bool = True
    # Roles for which the CLI itself guarantees schema-valid structured output.
    structured_roles: Tuple[str, ...] = ()

    def build_invocation(
        self,
        role: str,
        prompt: str,
        model: Optional[str] = None,
        review_options: Optional[ReviewOptions] = None,
    ) -> Tuple[List[str], Dict[str, str]]:
        argv = [self.command] + self.build_args(role, prompt, model, review_options)
        return argv, dict(os.environ)

    def format_line(self, line: str) -> Optional[str]:
        """Human-readable rendering of one output line, or None to hide it."""
        if not self.uses_jsonl:
            return line
        event = _parse_event(line)
        if event is None:
            return line if line.strip() else None
        return _event_text(event)


# ── Stream helpers ────────────────────────────────────────────


def _parse_event(line: str) -> Optional[Dict[str, Any]]:
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        event = json.loads(line)
    except ValueError:
        return None
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        return None
    return event


def _iter_events(output: str):
    for line in output.splitlines():
        event = _parse_event(line)
        if event is not None:
            yield event


def _event_text(event: Dict[str, Any]) -> Optional[str]:
    etype = event["type"]
    if etype == "result" and isinstance(event.get("result"), str):
        return "=== Result ===\n" + event["result"]
    if etype == "assistant":
        blocks = (event.get("message") or {}).get("content") or []
        parts = []
        for block in blocks:
            if block.get("type") == "text":
                parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                parts.append("--- Tool: {} ---".format(block.get("name", "?")))
        return "\n".join(p for p in parts if p) or None
    if etype == "item.completed":
        item = event.get("item") or {}
        if item.get("type") == "agent_message":
            return item.get("text")
        if item.get("type") == "command_execution":
            return "--- Command: {} ---".format(item.get("command", ""))
        return None
    if etype == "message" and event.get("role") == "assistant":
        return event.get("content")
    return None


# ── Per-agent command lines ───────────────────────────────────


def _with_model(args: List[str], model: Optional[str]) -> List[str]:
    return args + ["--model", model] if model else args


def _claude_args(role, prompt, model, review_options):
    args = ["--model", model] if model else []
    return args + [
        "-p", prompt,
        "--dangerously-skip-permissions",
        "--verbose",
        "--output-format", "stream-json",
    ]


def _codex_args(role, prompt, model, review_options):
    if role != "reviewer":
        args = ["exec", "--full-auto", "--config", "model_reasoning_effort=high"]
        return _with_model(args + ([prompt] if prompt else []), model)
    base = ["exec", "--json", "--config", "model_reasoning_effort=high"]
    options = review_options or ReviewOptions()
    if options.commit_sha:
        return _with_model(base + ["review", "--commit", options.commit_sha], model)
    if options.base_branch:
        return _with_model(base + ["review", "--base", options.base_branch], model)
    if options.custom_instructions:
        args = ["exec", "--full-auto", "--json", "--config", "model_reasoning_effort=high"]
        return _with_model(args + ["review " + prompt if prompt else "review"], model)
    return _with_model(base + ["review", "--uncommitted"], model)


def _opencode_args(role, prompt, model, review_options):
    args = _with_model(["run"], model)
    if role == "reviewer":
        return args + [prompt or "/review"]
    return args + [prompt]


def _gemini_args(role, prompt, model, review_options):
    args = _with_model(["--yolo"], model)
    return args + ["--output-format", "stream-json", "--prompt", prompt]


# ── Result extraction ─────────────────────────────────────────


def _extract_claude_result(output: str) -> Optional[str]:
    result = None
    for event in _iter_events(output):
        if event["type"] == "result" and isinstance(event.get("result"), str):
            result = event["result"]
    return result


def _extract_codex_result(output: str) -> Optional[str]:
    result = None
    for event in _iter_events(output):
        item = event.get("item") or {}
        if event["type"] == "item.completed" and item.get("type") == "agent_message":
            result = item.get("text")
    return result


def _extract_gemini_result(output: str) -> Optional[str]:
    parts = []
    for event in _iter_events(output):
        if event["type"] == "message" and event.get("role") == "assistant" and event.get("delta"):
            parts.append(str(event.get("content", "")))
    return "".join(parts) or None


def _extract_plain_result(output: str) -> Optional[str]:
    return output.strip() or None


AGENTS: Dict[str, AgentSpec] = {
    "claude": AgentSpec("claude", "claude", _claude_args, _extract_claude_result),
    "codex": AgentSpec(
        "codex", "codex", _codex_args, _extract_codex_result,
        structured_roles=("reviewer",),
    ),
    "opencode": AgentSpec("opencode", "opencode", _opencode_args, _extract_plain_result, uses_jsonl=False),
    "gemini": AgentSpec("gemini", "gemini", _gemini_args, _extract_gemini_result),
}


def register_agent(spec: AgentSpec) -> None:
    """Add or replace an agent entry."""
    AGENTS[spec.name] = spec


def get_agent(name: str) -> AgentSpec:
    try:
        return AGENTS[name]
    except KeyError:
        raise ConfigError("Unknown agent '{}'. Available: {}".format(
            name, ", ".join(sorted(AGENTS)),
        )) from None


def extract_agent_result(agent: str, output: str) -> Optional[str]:
    """Final answer text from an agent's raw output, if recognizable."""
    if not output.strip():
        return None
    return get_agent(agent).extract_result(output)


def has_reliable_structured_output(agent: str, role: str) -> bool:
    return role in get_agent(agent).structured_roles
