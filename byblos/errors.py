from __future__ import annotations


class MarketplaceError(Exception):
    code = "MARKETPLACE_ERROR"
    http_status = 400

    def __init__(self, message: str = "", *, details: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = dict(details or {})

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.http_status),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(MarketplaceError):
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class AuthorizationError(MarketplaceError):
    code = "FORBIDDEN"
    http_status = 403

    def __init__(self, message: str = "", *, status: int = 403, details: dict | None = None):
        super().__init__(message, details=details)
        self.http_status = int(status)


class InvalidTransition(MarketplaceError):
    code = "INVALID_TRANSITION"
    http_status = 409


class GuardViolation(MarketplaceError):
    code = "GUARD_VIOLATION"
    http_status = 422


class UnmatchedPayment(MarketplaceError):
    # Acknowledged with 200 so the provider stops retrying; flagged for manual review.
    code = "UNMATCHED_PAYMENT"
    http_status = 200


class InsufficientBalance(MarketplaceError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 422


class RateLimited(MarketplaceError):
    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, message: str = "", *, retry_after: int = 1, details: dict | None = None):
        super().__init__(message or "Too many requests. Please retry later.", details=details)
        self.retry_after = int(max(1, retry_after or 1))

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["retry_after"] = self.retry_after
        return payload
