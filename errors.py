"""
Errors raised by the listing lifecycle engine.

Every error carries a human readable message plus a machine readable
``kind``; ``main.py`` turns them into JSON responses using ``status_code``.
"""

from typing import Optional


class LifecycleError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.message}


class ValidationError(LifecycleError):
    kind = "validation"
    status_code = 400


class AuthorizationError(LifecycleError):
    kind = "authorization"
    status_code = 403


class NotFoundError(LifecycleError):
    kind = "not_found"
    status_code = 404


class ConflictError(LifecycleError):
    kind = "conflict"
    status_code = 409


class StoreError(LifecycleError):
    """The underlying database call failed; possibly transient."""

    kind = "store"
    status_code = 503

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.step = step

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.step is not None:
            data["step"] = self.step
        return data


class PartialFailureError(StoreError):
    """
    A multi-step operation stopped after some steps were committed.
    Nothing is rolled back; ``step`` names the step that failed.
    """

    kind = "partial_failure"
    status_code = 500

    def __init__(self, message: str, step: str, requests_deleted: int = 0):
        super().__init__(message, step=step)
        self.requests_deleted = requests_deleted

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["requests_deleted"] = self.requests_deleted
        return data
