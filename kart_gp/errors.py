from __future__ import annotations

from typing import List, Literal, Optional


AssignmentReason = Literal["closed", "full", "not-found", "assigned"]


class EngineError(Exception):
    """Base class for every failure the standings/grid/scoring engine reports."""


class ConfigurationError(EngineError):
    """
    A grid configuration field is invalid. Raised before any computation starts,
    so nothing is ever partially applied.
    """

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class InputIncompleteError(EngineError):
    """Finishing positions are missing, duplicated within a group or unknown."""

    def __init__(self, message: str, problems: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])


class AssignmentRejected(EngineError):
    def __init__(self, reason: AssignmentReason, session_id: str, pilot_id: Optional[str] = None) -> None:
        super().__init__(f"Assignment to session {session_id} rejected: {reason}")
        self.reason = reason
        self.session_id = session_id
        self.pilot_id = pilot_id


class SessionRejected(AssignmentRejected):
    """Time Attack session operation refused (unknown or closed session)."""
