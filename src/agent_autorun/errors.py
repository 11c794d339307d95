"""Exception taxonomy shared across the package."""

from __future__ import annotations


class AutorunError(Exception):
    """Base class for package errors."""


class ConfigurationError(AutorunError):
    """Unresolvable agent, playbook or document; raised before a run starts."""

    def __init__(self, message: str, *, code: str = "CONFIGURATION_ERROR") -> None:
        super().__init__(message)
        self.code = code


class StoreNotInitializedError(AutorunError):
    """Store operation called before ``initialize()``."""

    def __init__(self) -> None:
        super().__init__("Database not initialized")


class RetentionValidationError(AutorunError, ValueError):
    """Retention window must be a positive number of days."""

    def __init__(self, days: int) -> None:
        super().__init__(f"olderThanDays must be greater than 0 (got {days})")
        self.days = days


class MigrationError(AutorunError):
    """Schema migration step failed and was rolled back."""

    def __init__(self, version: int, message: str) -> None:
        super().__init__(f"Migration v{version} failed: {message}")
        self.version = version


class LaunchError(AutorunError):
    """Process launch error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
