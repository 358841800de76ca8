"""Error taxonomy shared by the planning services."""
from __future__ import annotations


class ValidationError(ValueError):
    """Malformed or out-of-range input detected before any computation."""


class InfeasibleError(RuntimeError):
    """Constraints cannot be satisfied together (e.g., renewable target vs. budget)."""


class DegradedResultError(RuntimeError):
    """A non-critical stage failed and a neutral default should be substituted."""
