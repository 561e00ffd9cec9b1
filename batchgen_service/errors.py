"""Exception types shared across the service."""

from __future__ import annotations


class BatchgenError(Exception):
    """Base class for service-specific errors."""


class RequestInvalid(BatchgenError):
    """The request cannot start a batch (HTTP 400, no stream is opened)."""


class Unauthenticated(BatchgenError):
    """No valid user session was presented (HTTP 401)."""


class PersistenceError(BatchgenError):
    """Storing a successful output or its record failed."""


class StorageNotConfigured(PersistenceError):
    """R2 credentials are incomplete."""
