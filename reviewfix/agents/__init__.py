# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Agent CLI registry and subprocess runner."""
from reviewfix.agents.registry import (
    AGENTS,
    AgentSpec,
    extract_agent_result,
    get_agent,
    has_reliable_structured_output,
    register_agent,
)
from reviewfix.agents.runner import run_agent

__all__ = [
    "AGENTS", "AgentSpec",
    "extract_agent_result", "get_agent", "has_reliable_structured_output",
    "register_agent", "run_agent",
]
