from __future__ import annotations


class OrderEngineError(Exception):
    """Base error for order lifecycle operations.

    Carries a machine-checkable ``code``, a human ``message`` and the HTTP
    status the API layer should answer with.
    """

    code = "ORDER_ERROR"
    http_status = 400

    def __init__(self, message: str = "", *, code: str | None = None, http_status: int | None = None, details: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        if http_status is not None:
            self.http_status = int(http_status)
        self.details = dict(details or {})

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.http_status),
        }
        payload.update(self.details)
        return payload


class NotFound(OrderEngineError):
    code = "NOT_FOUND"
    http_status = 404


class Forbidden(OrderEngineError):
    code = "FORBIDDEN"
    http_status = 403


class ValidationError(OrderEngineError):
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidTransition(OrderEngineError):
    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, message: str = "", *, current_status: str | None = None, allowed_statuses=None, **kwargs):
        details = dict(kwargs.pop("details", None) or {})
        if current_status is not None:
            details["current_status"] = current_status
        if allowed_statuses is not None:
            details["allowed_statuses"] = sorted(str(s) for s in allowed_statuses)
        super().__init__(message, details=details, **kwargs)
        self.current_status = current_status
        self.allowed_statuses = details.get("allowed_statuses", [])


class DependencyUnavailable(OrderEngineError):
    code = "DEPENDENCY_UNAVAILABLE"
    http_status = 503

    def __init__(self, message: str = "", **kwargs):
        details = dict(kwargs.pop("details", None) or {})
        details.setdefault("retryable", True)
        super().__init__(message, details=details, **kwargs)


class ConflictAlreadyApplied(OrderEngineError):
    """Idempotent replay; the API answers with success."""

    code = "ALREADY_APPLIED"
    http_status = 200

    def __init__(self, message: str = "", *, order=None, **kwargs):
        super().__init__(message, **kwargs)
        self.order = order


class PartialBulkFailure(OrderEngineError):
    """Aggregate result of a bulk operation where some items failed."""

    code = "PARTIAL_BULK_FAILURE"
    http_status = 200

    def __init__(self, message: str = "", *, results: list | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.results = list(results or [])

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["ok"] = True
        payload["results"] = self.results
        return payload
