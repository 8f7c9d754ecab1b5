"""
Storefront Errors
=================

Every failure a storefront operation can report. Services raise these;
``main.py`` maps them onto HTTP responses with a single exception handler.
None of them are retried automatically.
"""


class StorefrontError(Exception):
    """Base class. ``status_code`` is the HTTP status the API reports."""

    status_code = 500
    default_detail = "Server error"

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFound(StorefrontError):
    status_code = 404
    default_detail = "Not found"


class InsufficientStock(StorefrontError):
    status_code = 409
    default_detail = "Insufficient stock"


class EmptyCart(StorefrontError):
    status_code = 400
    default_detail = "Cart is empty"


class InvalidCoupon(StorefrontError):
    status_code = 400
    default_detail = "Invalid coupon"


class Unauthorized(StorefrontError):
    """Acting on another user's resource, a banned account, or a non-admin on admin routes."""

    status_code = 403
    default_detail = "Access denied"


class NotAuthenticated(Unauthorized):
    status_code = 401
    default_detail = "Authentication required"


class InvalidStateTransition(StorefrontError):
    status_code = 409
    default_detail = "Invalid state transition"


class PersistenceFailure(StorefrontError):
    status_code = 500
    default_detail = "Could not save changes"


class InvalidUpload(StorefrontError):
    status_code = 400
    default_detail = "Invalid upload"


class BackupNotSupported(StorefrontError):
    status_code = 501
    default_detail = "Backups are only available for SQLite databases"
