"""Error taxonomy shared by the core and its adapters."""

from __future__ import annotations

from typing import Iterable, Optional


class HintbotError(Exception):
    """Base class for all expected hintbot failures."""


class IllegalTransitionError(HintbotError):
    """Raised when an event proposes a state the current state cannot reach."""

    def __init__(self, current, proposed, allowed: Iterable) -> None:
        self.current = current
        self.proposed = proposed
        self.allowed = tuple(allowed)
        super().__init__(f"Illegal transition {current} -> {proposed}")


class ExternalCallError(HintbotError):
    """A call to the LLM proxy failed (network, timeout, or non-2xx)."""

    def __init__(self, stage: str, message: str, status_code: Optional[int] = None) -> None:
        self.stage = stage
        self.message = message
        self.status_code = status_code
        super().__init__(f"{stage}: {message}")


class NotFoundError(HintbotError):
    """A keyed record required by the caller does not exist."""


class TemplateLoadError(HintbotError):
    """A template catalog file could not be decoded."""
