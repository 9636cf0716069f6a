"""
Service layer exceptions.
"""

from typing import Any


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class ConnectorError(ServiceError):
    """Upstream connector answered with a non-2xx status."""

    def __init__(
        self,
        status: int,
        body: Any = None,
        message: str | None = None,
        service_id: str | None = "connector",
    ):
        self.status = status
        self.body = body
        super().__init__(message or f"connector_error {status}", service_id=service_id)


class ConnectorAuthError(ConnectorError):
    """Token exchange was rejected."""

    def __init__(self, status: int, body: Any = None):
        super().__init__(status, body, message=f"connector_oauth_failed {status}")


class RequestTimeoutError(ServiceError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class InvalidationQueueMissingError(ServiceError):
    """The durable invalidation table does not exist."""

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Invalidation table '{table}' not found", service_id="cache")
