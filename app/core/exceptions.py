"""Error types raised by the RBAC services and mapped to HTTP responses in main.py."""

from typing import Any, Dict, Iterable, List, Optional


class RBACError(Exception):
    """Base exception for the access-control core."""

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message}


class NotFoundError(RBACError):
    """A role, permission or user referenced by id does not exist."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, 404)


class ValidationError(RBACError):
    """A write referenced unknown ids or carried a malformed value.

    Raised before anything is written, so the whole write is rejected.
    """

    def __init__(self, message: str = "Validation failed", invalid_ids: Optional[Iterable[str]] = None):
        super().__init__(message, 422)
        self.invalid_ids: List[str] = sorted(invalid_ids or [])

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.invalid_ids:
            body["invalid_ids"] = self.invalid_ids
        return body


class ConflictError(RBACError):
    """Unique constraint violated (permission resource/action, role name)."""

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message, 409)


class SessionStateError(RBACError):
    """Operation not allowed in the staged session's current state."""

    def __init__(self, message: str = "Invalid session state"):
        super().__init__(message, 409)


class DataIntegrityError(RBACError):
    """Stored rows could not be parsed (e.g. an effect other than allow/deny)."""

    def __init__(self, message: str = "Stored RBAC data is malformed"):
        super().__init__(message, 500)


class StoreError(RBACError):
    """The backing store rejected or failed a request."""

    def __init__(self, message: str = "RBAC store request failed"):
        super().__init__(message, 502)


class CommitPartialFailure(RBACError):
    """Some staged entries were not written. `result` holds the per-entry outcomes."""

    def __init__(self, result: Any):
        failed = result.failed_ids
        super().__init__(
            f"{len(failed)} of {len(result.outcomes)} staged changes failed: {', '.join(failed)}",
            207 if result.status == "partial" else 502,
        )
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["result"] = self.result.model_dump(mode="json")
        return body
