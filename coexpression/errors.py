"""
Pipeline error types.

Every error carries the name of the stage that raised it and a ``details``
dict with the offending identifiers or parameters, so a failed run can be
traced back without re-running it.
"""

from typing import Any, Dict, Optional


class CoexpressionError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, stage: str = 'pipeline',
                 details: Optional[Dict[str, Any]] = None):
        self.stage = stage
        self.details = dict(details or {})
        super().__init__(f"[{stage}] {message}")


class InputShapeError(CoexpressionError):
    """Expression and trait identifiers cannot be aligned."""


class DegenerateDataError(CoexpressionError):
    """Nothing left to analyse (all genes/samples filtered, empty search, ...)."""


class NumericalDegeneracyError(CoexpressionError):
    """
    A numerical kernel hit a degenerate case (e.g. collapsed TOM denominator).

    Recovered locally by the kernels; raised only when ``strict=True`` is
    requested by the caller.
    """


class ConfigurationError(CoexpressionError):
    """A parameter is outside its valid range."""
