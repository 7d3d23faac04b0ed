from typing import Optional, Dict, Any


class PaygateException(Exception):
    """Base exception for all Paygate errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(PaygateException):
    """Raised when application configuration is invalid or missing."""

    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)


class ResourceNotFoundError(PaygateException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class BillingError(PaygateException):
    """Raised when payment or subscription processing fails."""

    def __init__(self, message: str, code: str = "billing_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class ConflictError(PaygateException):
    """Raised when the requested change conflicts with current state."""

    def __init__(self, message: str, code: str = "conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=409, details=details)


class AuthorizationError(PaygateException):
    """Raised when the acting user may not perform the operation."""

    def __init__(self, message: str, code: str = "forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=403, details=details)


class ExternalAPIError(PaygateException):
    """Raised when an upstream provider API call fails."""

    def __init__(self, message: str, code: str = "external_api_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=502, details=details)


class TenantContextError(PaygateException):
    """Raised when a tenant-scoped write runs without tenant context."""

    def __init__(self, message: str, code: str = "tenant_context_missing", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)
