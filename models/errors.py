"""
Error taxonomy for the exposure engine.

Validation and workflow-guard errors are business rejections: report them to
the caller, never retry. ConcurrencyConflictError and StorageError are
transient and propagate unmodified so the caller's retry policy can act.
"""

from __future__ import annotations

from typing import Iterable


class ExposureError(Exception):
    """Base exception for all engine errors."""


class ValidationError(ExposureError):
    """Malformed or invalid input. Carries every violation, not just the first."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("Validation failed: " + "; ".join(self.errors))


class StaleVersionError(ExposureError):
    """Out-of-order or duplicate delivery of a settlement version."""

    def __init__(self, settlement_id: str, version: int, latest_version: int) -> None:
        self.settlement_id  = settlement_id
        self.version        = version
        self.latest_version = latest_version
        super().__init__(
            f"Settlement {settlement_id} version {version} is not newer than "
            f"stored version {latest_version}"
        )


class RateNotFoundError(ExposureError):
    """No exchange rate on file for a non-reporting currency."""

    def __init__(self, currency: str) -> None:
        self.currency = currency
        super().__init__(f"No exchange rate on file for currency {currency}")


class SettlementNotFoundError(ExposureError):
    def __init__(self, settlement_id: str, version: int | None = None) -> None:
        self.settlement_id = settlement_id
        self.version       = version
        suffix = f" version {version}" if version is not None else ""
        super().__init__(f"Settlement {settlement_id}{suffix} not found")


class WorkflowError(ExposureError):
    """Base for approval-workflow guard violations."""


class DuplicateRequestError(WorkflowError):
    def __init__(self, settlement_id: str, version: int, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(
            f"Release already requested by you ({user_id}) for settlement "
            f"{settlement_id} version {version}"
        )


class SelfAuthorisationError(WorkflowError):
    def __init__(self, settlement_id: str, version: int, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(
            f"Requester cannot self-authorise: {user_id} requested release of "
            f"settlement {settlement_id} version {version}"
        )


class InvalidTransitionError(WorkflowError):
    def __init__(self, settlement_id: str, version: int, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Settlement {settlement_id} version {version}: {reason}")


class ConcurrencyConflictError(ExposureError):
    """Lost the per-group race; the whole operation is safe to retry."""

    def __init__(self, group_key: str, expected_ref: int, actual_ref: int) -> None:
        self.group_key    = group_key
        self.expected_ref = expected_ref
        self.actual_ref   = actual_ref
        super().__init__(
            f"Running total for {group_key} moved from ref {expected_ref} to {actual_ref}"
        )


class StorageError(ExposureError):
    """Persistence failure surfaced from the transaction boundary."""
