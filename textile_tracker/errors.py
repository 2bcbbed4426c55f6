"""Exception hierarchy shared by the store, the services and the web layer."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for all errors raised by the production tracker."""

    status_code = 500
    code = "TrackerError"


class ValidationError(TrackerError, ValueError):
    """Raised for malformed input such as an unreadable scan code."""

    status_code = 400
    code = "ValidationError"


class NotFoundError(TrackerError):
    """Raised when an order, warp, loom or fabric cut does not exist."""

    status_code = 404
    code = "NotFound"


class ConflictError(TrackerError):
    """Raised when a request contradicts the current state of the records."""

    status_code = 400
    code = "Conflict"


class InsufficientQuantityError(ConflictError):
    code = "InsufficientQuantity"


class LoomBusyError(ConflictError):
    code = "LoomBusy"


class ActiveWarpsExistError(ConflictError):
    code = "ActiveWarpsExist"


class QuantityMismatchError(ConflictError):
    code = "QuantityMismatch"


class AlreadyInspectedError(ConflictError):
    code = "AlreadyInspected"


class InvalidTransitionError(ConflictError):
    code = "InvalidTransition"


class StoreError(TrackerError):
    """Raised when the document store fails; never retried automatically."""

    code = "StoreError"


class TransactionConflictError(StoreError):
    """Raised when a transaction could not be started or committed."""

    code = "TransactionConflict"


__all__ = [
    "TrackerError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InsufficientQuantityError",
    "LoomBusyError",
    "ActiveWarpsExistError",
    "QuantityMismatchError",
    "AlreadyInspectedError",
    "InvalidTransitionError",
    "StoreError",
    "TransactionConflictError",
]
