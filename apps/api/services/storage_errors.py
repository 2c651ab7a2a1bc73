"""Storage engine error taxonomy.

Each error carries a machine-readable ``code``, the HTTP status it maps to and
structured ``details`` the client can act on (retry hints, remaining counts).
Credits never appear in ``details`` of user-facing errors; sizes are in GB.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for all storage ledger errors."""

    status_code = 400
    code = "STORAGE_ERROR"
    internal = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.details}


class InsufficientCredits(StorageError):
    """Not enough unreserved balance. Recoverable by purchasing more storage."""

    status_code = 402
    code = "STORAGE_LIMIT_REACHED"

    def __init__(self, *, available: int, required: int, available_gb: float, required_gb: float):
        super().__init__(
            "Storage limit reached. Upgrade to get more space.",
            {"available_gb": available_gb, "required_gb": required_gb},
        )
        self.available = available
        self.required = required


class AccountFrozen(StorageError):
    status_code = 423
    code = "ACCOUNT_FROZEN"

    def __init__(self, reason: Optional[str] = None):
        super().__init__("Account is frozen. Contact support.", {"reason": reason})


class RateLimitExceeded(StorageError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, *, endpoint: str, retry_after_seconds: int):
        super().__init__(
            "Too many requests. Try again later.",
            {"endpoint": endpoint, "retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class DailyLimitExceeded(StorageError):
    status_code = 429
    code = "DAILY_LIMIT_EXCEEDED"

    def __init__(self, *, media_type: str, current_count: int, max_limit: int):
        super().__init__(
            f"Daily {media_type} limit reached. You can upload {max_limit} more tomorrow.",
            {"media_type": media_type, "current_count": current_count, "max_limit": max_limit},
        )
        self.current_count = current_count
        self.max_limit = max_limit


class UploadNotFound(StorageError):
    status_code = 404
    code = "UPLOAD_NOT_FOUND"

    def __init__(self, upload_id: str):
        super().__init__("Upload not found.", {"upload_id": upload_id})


class UploadConflict(StorageError):
    """Transition requested on an upload whose terminal state forbids it."""

    status_code = 409
    code = "UPLOAD_CONFLICT"

    def __init__(self, upload_id: str, status: str):
        super().__init__(f"Upload is already {status}.", {"upload_id": upload_id, "status": status})


class InvalidRequest(StorageError):
    status_code = 422
    code = "INVALID_REQUEST"


class InvalidPurchase(StorageError):
    status_code = 422
    code = "INVALID_PURCHASE"


class PurchaseConflict(StorageError):
    status_code = 409
    code = "PURCHASE_CONFLICT"


class AccountNotFound(StorageError):
    """No account row for a user that should have one. Provisioning is broken."""

    status_code = 500
    code = "STORAGE_ACCOUNT_NOT_FOUND"
    internal = True

    def __init__(self, user_id: str):
        super().__init__(f"Storage account not found for user {user_id}", {})
        self.user_id = user_id


class LedgerWriteError(StorageError):
    """Balance mutation and ledger write could not be committed together."""

    status_code = 500
    code = "LEDGER_WRITE_FAILED"
    internal = True


class UnknownAccount(StorageError):
    """Administrative lookup of a user the engine has never seen."""

    status_code = 404
    code = "ACCOUNT_UNKNOWN"

    def __init__(self, user_id: str):
        super().__init__("No storage account exists for this user.", {"user_id": user_id})
