"""Shared exception types for the decision core."""

from typing import Optional


class ScoreUnavailable(RuntimeError):
    """Raised when a risk score cannot be produced for an opportunity."""

    def __init__(self, opportunity_id: str, original: Optional[Exception] = None):
        super().__init__(f"Risk score unavailable for opportunity {opportunity_id}")
        self.opportunity_id = opportunity_id
        self.original = original


class StoreUnavailable(RuntimeError):
    """Raised when the persisted state backend cannot be read or written."""

    def __init__(self, backend: str, original: Optional[Exception] = None):
        super().__init__(f"State backend unavailable: {backend}")
        self.backend = backend
        self.original = original


class ProposerError(RuntimeError):
    """Raised when the strategy proposer fails or returns unusable output."""

    def __init__(self, reason: str, original: Optional[Exception] = None):
        super().__init__(reason)
        self.reason = reason
        self.original = original
