from __future__ import annotations


class DomainError(RuntimeError):
    """Base class for failures surfaced to API callers as JSON errors."""

    code = "DOMAIN_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str = "", *, code: str | None = None, details: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.http_status),
            "retryable": bool(self.retryable),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidTransition(DomainError):
    code = "INVALID_TRANSITION"
    http_status = 409


class PreconditionMissing(DomainError):
    code = "PRECONDITION_MISSING"
    http_status = 422


class NotFound(DomainError):
    code = "NOT_FOUND"
    http_status = 404


class ConflictError(DomainError):
    code = "CONFLICT"
    http_status = 409
    retryable = True


class ReconciliationMismatch(DomainError):
    code = "RECONCILIATION_MISMATCH"
    http_status = 409


class ExternalDependencyFailure(DomainError):
    code = "EXTERNAL_DEPENDENCY_FAILURE"
    http_status = 503
    retryable = True


class Forbidden(DomainError):
    code = "FORBIDDEN"
    http_status = 403


class Unauthorized(DomainError):
    code = "UNAUTHORIZED"
    http_status = 401


class BadRequest(DomainError):
    code = "BAD_REQUEST"
    http_status = 400


class PaymentNotConfirmed(DomainError):
    """Gateway reported a non-successful payment; the order stays payable."""

    code = "PAYMENT_CONFIRMATION_FAILED"
    http_status = 402
    retryable = True


class IdempotencyKeyReuse(DomainError):
    """Idempotency-Key replayed with a different request body."""

    code = "IDEMPOTENCY_KEY_REUSE"
    http_status = 409
