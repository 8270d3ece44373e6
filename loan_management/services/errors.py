from __future__ import annotations


class LifecycleError(RuntimeError):
    status_code = 400
    code = "LIFECYCLE_ERROR"


class InvalidIntervalError(LifecycleError):
    code = "INVALID_INTERVAL"


class ReservationNotFoundError(LifecycleError):
    status_code = 404
    code = "RESERVATION_NOT_FOUND"


class LoanNotFoundError(LifecycleError):
    status_code = 404
    code = "LOAN_NOT_FOUND"


class AssetNotFoundError(LifecycleError):
    status_code = 404
    code = "ASSET_NOT_FOUND"


class TicketNotFoundError(LifecycleError):
    status_code = 404
    code = "TICKET_NOT_FOUND"


class UserNotFoundError(LifecycleError):
    status_code = 404
    code = "USER_NOT_FOUND"


class InvalidStateTransitionError(LifecycleError):
    code = "INVALID_STATE_TRANSITION"


class ReservationOverlapError(LifecycleError):
    status_code = 409
    code = "RESERVATION_OVERLAP"


class ItemUnavailableError(LifecycleError):
    status_code = 409
    code = "ITEM_UNAVAILABLE"


class AlreadyReturnedError(LifecycleError):
    code = "ALREADY_RETURNED"


class OwnershipError(LifecycleError):
    status_code = 403
    code = "NOT_OWNER"


class AlreadyStartedError(LifecycleError):
    code = "ALREADY_STARTED"


class MissingReasonError(LifecycleError):
    code = "MISSING_REASON"


class InvalidAssigneeError(LifecycleError):
    code = "INVALID_ASSIGNEE"
