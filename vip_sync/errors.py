"""Exceptions for vip-sync.

Each error carries the HTTP status and a short machine code so the API
error middleware can map it without a lookup table.
"""

from __future__ import annotations

from enum import Enum


class VipSyncError(Exception):
    """Base exception for vip-sync errors."""

    status: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()


class ValidationError(VipSyncError):
    """Missing or malformed input."""

    status = 400
    code = "validation_error"


class AuthError(VipSyncError):
    """Bad shared secret or API token."""

    status = 401
    code = "unauthorized"


class NotFoundError(VipSyncError):
    """Unknown order, event, session or record."""

    status = 404
    code = "not_found"


class ExpiredError(VipSyncError):
    """The record exists but is no longer usable."""

    status = 410
    code = "expired"


class ConflictError(VipSyncError):
    """Duplicate delivery or conflicting identity binding."""

    status = 409
    code = "conflict"


class UpstreamError(VipSyncError):
    """Payment gateway or identity provider failure."""

    status = 502
    code = "upstream_error"


class VerificationFailure(Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    RETURN_TO_MISMATCH = "return_to_mismatch"
    BAD_CLAIMED_ID = "bad_claimed_id"


class IdentityVerificationError(AuthError):
    """The identity provider did not vouch for the claimed identity."""

    code = "identity_verification_failed"

    def __init__(self, reason: VerificationFailure, message: str = "") -> None:
        super().__init__(message or f"Identity verification failed: {reason.value}")
        self.reason = reason
