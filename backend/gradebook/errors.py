"""
errors.py — Exceptions raised by the grade analytics engine.

Routes translate these into HTTP responses; the engine never builds responses.
"""

from typing import Dict, List, Optional


class GradebookError(Exception):
    """Base class for engine errors."""


class ValidationError(GradebookError):
    """Malformed or inconsistent input. Carries field-level issues."""

    def __init__(self, message: str, issues: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.message = message
        self.issues = issues or []

    @classmethod
    def missing(cls, *fields: str) -> "ValidationError":
        return cls(
            f"{', '.join(fields)} {'is' if len(fields) == 1 else 'are'} required",
            [{"field": f, "message": "This field is required."} for f in fields],
        )


class AuthorizationError(GradebookError):
    """Caller's role or teaching assignment does not permit the operation."""


class NotFoundError(GradebookError):
    """A referenced entity does not exist for this school."""


class ConflictError(GradebookError):
    """A unique key was violated while writing."""
