"""Error taxonomy for the verification engine.

InvalidInput and ChallengeNotFound are returned as values by the manager and
the submission flow. InfrastructureFailure and UnroutableType propagate.
"""

from __future__ import annotations


class VerificationError(Exception):
    """Base class for verification failures."""

    code: str = "VERIFICATION_FAILED"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class InvalidInput(VerificationError):
    """Submitted fields are malformed (wrong code length, unknown type, ...)."""

    code = "INVALID_INPUT"

    def __init__(self, message: str = "Invalid input", *, fields: dict[str, list[str]] | None = None):
        super().__init__(message)
        self.fields = fields or {}


class ChallengeNotFound(VerificationError):
    """No live challenge matched the submitted code.

    Covers both wrong codes and missing/expired challenges so callers cannot
    tell which one happened.
    """

    code = "CHALLENGE_NOT_FOUND"

    def __init__(self, message: str = "Invalid code"):
        super().__init__(message)


class InfrastructureFailure(VerificationError):
    """The challenge store could not be reached. Safe to retry."""

    code = "INFRASTRUCTURE_FAILURE"
    retryable = True


class UnroutableType(VerificationError):
    """A verified challenge has no registered handler (programming error)."""

    code = "UNROUTABLE_TYPE"
