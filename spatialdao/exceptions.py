"""
Error taxonomy for the data-access layer.

Engine and parser failures are never swallowed: they are wrapped in one of
these classes (keeping the original exception as ``__cause__``) and raised
again with the operation and offending input attached.
"""
from __future__ import annotations

from typing import Any, Optional


class GeometryError(ValueError):
    """Invalid, empty, or SRID-inconsistent geometry."""

    def __init__(self, message: str, value: Any = None):
        super().__init__(message)
        self.message = message
        self.value = value


class DaoError(RuntimeError):
    """Wraps any failure of the persistence engine."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class QueryError(DaoError):
    """Malformed criteria or a failed query execution."""


class NonUniqueResultError(QueryError):
    """A unique query matched more than one row."""


class StaleStateError(DaoError):
    """The entity is not managed by the current session."""
