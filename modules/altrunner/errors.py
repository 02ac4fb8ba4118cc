"""Errors surfaced to callers of user-invoked alt runner operations."""

from __future__ import annotations


class AltRunnerError(RuntimeError):
    """Base class for actionable alt runner failures."""


class AltNotFoundError(AltRunnerError):
    def __init__(self, alt_id: int) -> None:
        super().__init__(f"Alt {alt_id} not found")
        self.alt_id = alt_id


class EmptyCommandError(AltRunnerError, ValueError):
    def __init__(self) -> None:
        super().__init__("Empty command")
