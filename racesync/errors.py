from __future__ import annotations


class SyncError(ValueError):
    """Base for failures the coordinator reports to the caller as `{error: ...}`."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(SyncError):
    status_code = 400


class CapacityError(SyncError):
    status_code = 400


class ConflictError(SyncError):
    status_code = 409


class AuthError(SyncError):
    status_code = 401

    def __init__(self, message: str, expired: bool = False):
        super().__init__(message)
        self.expired = expired

    def to_dict(self) -> dict:
        return {"error": self.message, "expired": self.expired}


class ForbiddenError(SyncError):
    status_code = 403


class StorageError(SyncError):
    status_code = 503


class NotFoundError(SyncError):
    status_code = 404


class ConfigurationError(SyncError):
    status_code = 500
