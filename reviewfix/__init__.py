# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""reviewfix — iterative AI code review and fix cycles."""
from reviewfix.config import AgentSettings, CycleConfig, RetryPolicy, ReviewOptions
from reviewfix.errors import CheckpointError, ConfigError, LockHeldError, ReviewFixError
from reviewfix.models import FixSummary, ReviewSummary, SessionSummary

__version__ = "0.3.0"
__all__ = [
    "AgentSettings", "CycleConfig", "RetryPolicy", "ReviewOptions",
    "CheckpointError", "ConfigError", "LockHeldError", "ReviewFixError",
    "FixSummary", "ReviewSummary", "SessionSummary",
    "IterationEngine",
    "__version__",
]


def _lazy_iteration_engine():
    from reviewfix.engine import IterationEngine
    return IterationEngine


def __getattr__(name):
    if name == "IterationEngine":
        return _lazy_iteration_engine()
    raise AttributeError("module 'reviewfix' has no attribute '{}'".format(name))
