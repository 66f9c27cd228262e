"""
Edge function exceptions.

Every edge function failure surfaces as one of these. The API layer turns
them into ``{"success": false, "error": ...}`` responses with the carried
status code; ``extra`` fields are merged into the response body.
"""

from typing import Any, Dict


class ServiceError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra: Dict[str, Any] = extra


class ValidationError(ServiceError):
    status_code = 400


class AuthenticationError(ServiceError):
    status_code = 401


class PermissionDeniedError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class RateLimitedError(ServiceError):
    status_code = 429


class InsufficientBalanceError(ServiceError):
    status_code = 400


class KycRequiredError(ServiceError):
    status_code = 403

    def __init__(self, message: str = "KYC verification required before applying for a loan", **extra: Any):
        super().__init__(message, kyc_required=True, **extra)


class ConfigurationError(ServiceError):
    status_code = 500


class ChainError(ServiceError):
    status_code = 502
