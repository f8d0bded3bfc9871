"""Exception classes shared across the marketplace."""

from typing import Any


class MarketplaceError(Exception):
    """Base exception — carries a machine-readable code and an HTTP status."""

    def __init__(self, code: str, message: str, details: Any = None, status_code: int = 500):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code
        super().__init__(message)


class ValidationError(MarketplaceError):
    """Request or model validation failure."""

    def __init__(self, message: str, details: Any = None, code: str = "validation_failed"):
        super().__init__(code, message, details, status_code=400)


class NotFoundError(MarketplaceError):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            "not_found",
            f"{resource} '{resource_id}' not found",
            status_code=404,
        )


class ApiError(MarketplaceError):
    """Vendor API failure, raised by the integration clients."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 0,
        response_data: Any = None,
        endpoint: str = "",
    ):
        super().__init__(code, message, details=response_data, status_code=status_code or 502)
        self.http_status = status_code
        self.response_data = response_data
        self.endpoint = endpoint

    def is_retryable(self) -> bool:
        return self.http_status >= 500 or self.http_status == 429

    def is_rate_limited(self) -> bool:
        return self.http_status == 429

    def is_auth_error(self) -> bool:
        return self.http_status in (401, 403)
