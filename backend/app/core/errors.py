"""Error taxonomy for the strategy evolution engine.

Every error carries a human-readable message plus a ``details`` dict so
callers (and the JSON log formatter) get structured context.
"""
from __future__ import annotations

from typing import Any


class StrategyEvolutionError(Exception):
    """Base class; catch this to handle the whole family."""

    def __init__(self, message: str = "", details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = details or {}


class NotFoundError(StrategyEvolutionError):
    """Topic, strategy version or episode does not exist. Never retried."""


class ConflictError(StrategyEvolutionError):
    """
    Concurrent version-creation race or an invariant violation detected while
    promoting. Promotion re-reads and retries with backoff before surfacing it.
    """


class ValidationError(StrategyEvolutionError):
    """Malformed payload field, out-of-range rollout percentage, bad input. Never retried."""


class TransientStorageError(StrategyEvolutionError):
    """Retryable backing-store failure (lost connection, lock timeout, ...)."""
