"""
Verification engine error taxonomy.

Every error derives from VerificationError so the HTTP adapter can map the
whole family with one exception handler (status_code + message).
"""
from __future__ import annotations


class VerificationError(Exception):
    """Base of all verification engine errors."""
    status_code: int = 500
    message: str = "Internal verification engine error."

    def __init__(self, message: str | None = None, **details):
        self.message = message or self.__class__.message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


# ── Input ──

class ValidationError(VerificationError):
    """Malformed input, raised before any mutation."""
    status_code = 422
    message = "Invalid input."


class InvalidWeek(ValidationError):
    message = "Week does not exist in the given year."


class FutureBatch(ValidationError):
    message = "Cannot create batches more than 1 week in advance."


class NotFound(VerificationError):
    status_code = 404
    message = "Record not found."


class AccessDenied(VerificationError):
    status_code = 403
    message = "Actor is not allowed to act for this business."


# ── State machine ──

class InvalidTransition(VerificationError):
    status_code = 409
    message = "Invalid status transition."


class DeadlinePassed(InvalidTransition):
    message = "Deadline has already passed."


class TooCloseToDeadline(InvalidTransition):
    message = "Too close to the deadline for this operation."


# ── Uniqueness ──

class DuplicateBatch(VerificationError):
    status_code = 409
    message = "An open batch already exists for this business and week."


class TransactionAlreadyVerified(VerificationError):
    status_code = 409
    message = "Transaction has already been verified in this session."


# ── Concurrency ──

class ConcurrentModification(VerificationError):
    status_code = 409
    message = "Record was modified concurrently; re-read and retry."


# ── Advisory dependencies ──

class AssessmentUnavailable(VerificationError):
    """Risk assessment provider failed or timed out. Never fatal to a workflow."""
    status_code = 503
    message = "Risk assessment is unavailable."
