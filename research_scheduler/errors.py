from __future__ import annotations


ERROR_VALIDATION = "VALIDATION"
ERROR_STORAGE = "STORAGE"
ERROR_EXTERNAL_API = "EXTERNAL_API"
ERROR_NOT_FOUND = "NOT_FOUND"


class SchedulerError(Exception):
    error_type = "UNKNOWN"

    def __init__(self, detail: str = ""):
        super().__init__(f"{self.error_type}: {detail}")
        self.detail = detail


class ValidationError(SchedulerError):
    error_type = ERROR_VALIDATION


class StorageError(SchedulerError):
    error_type = ERROR_STORAGE


class NotFoundError(SchedulerError):
    error_type = ERROR_NOT_FOUND


class ExternalAPIError(SchedulerError):
    error_type = ERROR_EXTERNAL_API

    def __init__(self, detail: str = "", status_code: int | None = None):
        super().__init__(detail)
        self.status_code = status_code
