# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Exception types raised by the review/fix core."""


class ReviewFixError(Exception):
    """Base class for reviewfix errors."""


class ConfigError(ReviewFixError):
    """Configuration file is missing required fields or holds invalid values."""


class CheckpointError(ReviewFixError):
    """A checkpoint could not be created, restored, or discarded."""


class LockHeldError(ReviewFixError):
    """Another live session already owns the project lock."""

    def __init__(self, message: str, lock=None):
        super().__init__(message)
        self.lock = lock
