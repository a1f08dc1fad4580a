from __future__ import annotations


class EnforcementError(Exception):
    """Base class for failures the export pipeline reports to callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthorized(EnforcementError):
    """Caller has no session or organization context."""

    status_code = 401


class NotFound(EnforcementError):
    """Proposal, section, or record is absent or owned by another organization."""

    status_code = 404


class ValidationError(EnforcementError):
    status_code = 400


class CheckExecutionError(EnforcementError):
    """A sub-check raised while recomputing enforcement state."""

    def __init__(self, check: str, message: str) -> None:
        super().__init__(f"{check}: {message}")
        self.check = check
