from __future__ import annotations

from typing import Any, Dict, Optional


class SecondBrainError(Exception):
    """Base class for every error raised by the ingestion and retrieval core."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class DuplicateSource(SecondBrainError):
    """An un-retired queue job already exists for this source."""

    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(f"Source already queued: {source}", {"source": source})


class AlreadyExists(SecondBrainError):
    """An active item with the same fingerprint is already registered."""

    def __init__(self, item_id: str, fingerprint: str) -> None:
        self.item_id = item_id
        self.fingerprint = fingerprint
        super().__init__(
            f"Content already registered as item {item_id}",
            {"item_id": item_id, "fingerprint": fingerprint},
        )


class TransientFailure(SecondBrainError):
    """Retryable failure: tool unavailable, I/O error, timeout."""


class TerminalFailure(SecondBrainError):
    """Unsupported or corrupt content. Never retried."""


class DimensionMismatch(SecondBrainError):
    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Vector dimension {actual} does not match store dimension {expected}",
            {"expected": expected, "actual": actual},
        )


class InvalidConfiguration(SecondBrainError, ValueError):
    """Out-of-range parameter rejected before any work is done."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        details = {"field": field} if field else None
        super().__init__(message, details)


class InvalidTransition(SecondBrainError):
    """A job was asked to leave a state it is not in."""

    def __init__(self, job_id: str, expected: str, actual: Optional[str] = None) -> None:
        self.job_id = job_id
        super().__init__(
            f"Job {job_id} is not {expected}",
            {"job_id": job_id, "expected": expected, "actual": actual},
        )


class ClaimLost(InvalidTransition):
    """The job was requeued and claimed again since this worker took it."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        SecondBrainError.__init__(
            self, f"Job {job_id} was reclaimed by another worker", {"job_id": job_id}
        )


class NotFound(SecondBrainError):
    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}", {kind: identifier})


__all__ = [
    "SecondBrainError",
    "DuplicateSource",
    "AlreadyExists",
    "TransientFailure",
    "TerminalFailure",
    "DimensionMismatch",
    "InvalidConfiguration",
    "InvalidTransition",
    "ClaimLost",
    "NotFound",
]
