"""Error taxonomy for the analytics core.

Input problems subclass ``ValueError`` so callers that already guard
numeric helpers with ``except ValueError`` keep working.  Invariant
violations are ``RuntimeError``: they indicate a bug, not bad input.
"""


class SignalCoreError(Exception):
    """Base class for every error raised by the analytics core."""


class InsufficientDataError(SignalCoreError, ValueError):
    """The bar window is shorter than an indicator's required period.

    Recoverable by waiting for more bars, never by synthesising data.
    """


class InvalidInputError(SignalCoreError, ValueError):
    """Non-finite, negative-where-disallowed, or inconsistent input."""


class StatisticalInsufficiencyError(SignalCoreError, ValueError):
    """Not enough samples to produce a statistically meaningful result."""


class ComputationInvariantViolation(SignalCoreError, RuntimeError):
    """An internal consistency check failed (e.g. band ordering)."""
