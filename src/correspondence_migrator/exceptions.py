"""
Custom exception classes for the correspondence migration tool.
"""

from __future__ import annotations

from typing import Final

DATA_INTEGRITY_PREFIX: Final[str] = "Data integrity failure: "


class MigrationError(Exception):
    """Base exception for migration errors."""


class StepFailedError(MigrationError):
    """Raised when the destination system reports a step as unsuccessful."""


class DataIntegrityError(MigrationError):
    """Raised when an artifact produced by an earlier step is missing.

    The message always starts with ``Data integrity failure:`` so operators can
    tell it apart from transient remote failures in the recorded phase error.
    """

    def __init__(self, detail: str) -> None:
        super().__init__(f"{DATA_INTEGRITY_PREFIX}{detail}")
        self.detail = detail


class ItemLockedError(MigrationError):
    """Raised when another run currently holds the lease on an item."""


class SourceError(MigrationError):
    """Raised when the source system cannot be read."""


class AuthenticationError(MigrationError):
    """Raised when a credential cannot be obtained or refreshed."""


class ConfigurationError(MigrationError):
    """Raised when required settings are missing or malformed."""


class LeaseLostError(ItemLockedError):
    """Raised when a run finds that another run has taken over its item."""
