"""
Back-office error types.

Each error carries the HTTP status the API answers with.
"""


class BackOfficeError(Exception):
    """Base exception"""
    status_code = 500


class ValidationError(BackOfficeError, ValueError):
    """Input rejected before any write"""
    status_code = 400


class NotFoundError(BackOfficeError):
    """Row does not exist"""
    status_code = 404


class ConflictError(BackOfficeError):
    """Operation clashes with the current row state"""
    status_code = 409


class DiscountAlreadyAppliedError(ConflictError):
    """Digital-card discount was already applied to the order"""
    pass


class CardRejectedError(BackOfficeError):
    """Card is unknown, blocked or expired"""
    status_code = 422


class StoreError(BackOfficeError):
    """Persistent store call failed"""
    status_code = 502


class NotificationError(BackOfficeError):
    """Notification could not be delivered"""
    status_code = 502
