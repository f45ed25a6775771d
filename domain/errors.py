"""
Domain: error taxonomy.

Every failure the broker reports deliberately derives from BrokerError so the
HTTP boundary and the batch sweeps can tell expected failures from bugs.

- NotFoundError: a lead, provider or unlock is absent. Callers turn this into
  a no-op.
- DuplicateEventError: a replay of an event that was already applied.
  Audit-logged and absorbed.
- ConflictError: an illegal state transition (e.g. REVEALED -> NEW_LEAD).
  Rejected and logged; surfaced to callers as a no-op.
- UpstreamError: the SMS, payment or AI collaborator failed. Aborts the
  single item being processed, never a whole sweep.
- ValidationError: malformed intake data. The lead is never created.
- StorageError: the relational store rejected a write or could not be read.
"""

from __future__ import annotations


class BrokerError(Exception):
    """Base class for all expected broker failures."""


class NotFoundError(BrokerError):
    pass


class DuplicateEventError(BrokerError):
    pass


class ConflictError(BrokerError):
    pass


class UpstreamError(BrokerError):
    """Raised when an external collaborator (SMS, payments, AI) fails."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class ValidationError(BrokerError, ValueError):
    pass


class StorageError(BrokerError):
    pass


__all__ = [
    "BrokerError",
    "NotFoundError",
    "DuplicateEventError",
    "ConflictError",
    "UpstreamError",
    "ValidationError",
    "StorageError",
]
