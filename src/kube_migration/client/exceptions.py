"""Custom exceptions for Kube Bridge.

This module defines exception classes for the error conditions that can
occur while talking to the Kubernetes API and while running the migration
pipeline (discovery, export, transform, apply, transfer).
"""


class KubeBridgeError(Exception):
    """Base exception for all Kube Bridge errors."""

    pass


class APIError(KubeBridgeError):
    """Base class for API-related errors."""

    def __init__(self, message: str, status_code: int | None = None, response: dict | None = None):
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body (usually a metav1.Status object)
        """
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with status code and server reason."""
        msg = self.message
        if self.status_code:
            msg = f"[{self.status_code}] {msg}"
        if self.response and self.response.get("message"):
            msg = f"{msg}: {self.response['message']}"
        return msg


class AuthenticationError(APIError):
    """Raised when authentication fails (401 Unauthorized)."""

    pass


class AuthorizationError(APIError):
    """Raised when the credentials lack permission (403 Forbidden)."""

    pass


class NotFoundError(APIError):
    """Raised when a resource is not found (404 Not Found)."""

    pass


class ConflictError(APIError):
    """Raised when a resource conflict occurs (409 Conflict).

    Returned by the API server when creating an object that already exists
    or when updating with a stale resourceVersion.
    """

    pass


class InvalidResourceError(APIError):
    """Raised when the API server rejects a resource (422 / admission denial)."""

    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded (429 Too Many Requests)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        retry_after: int | None = None,
    ):
        """Initialize rate limit error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
            retry_after: Seconds to wait before retrying (from Retry-After header)
        """
        super().__init__(message, status_code, response)
        self.retry_after = retry_after


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    pass


class NetworkError(KubeBridgeError):
    """Raised when network-related errors occur (timeouts, connection failures)."""

    pass


class ConfigurationError(KubeBridgeError):
    """Raised when configuration or kubeconfig resolution is invalid."""

    pass


class OutputError(KubeBridgeError):
    """Raised when an output directory cannot be written.

    This is a systemic condition and aborts the run immediately.
    """

    pass


class MigrationError(KubeBridgeError):
    """Base class for per-unit pipeline errors."""

    pass


class DiscoveryError(MigrationError):
    """Raised when an API group cannot be discovered."""

    def __init__(self, message: str, group_version: str = ""):
        super().__init__(message)
        self.group_version = group_version


class FetchError(MigrationError):
    """Raised when listing or reading resource instances fails."""

    pass


class SerializationError(MigrationError):
    """Raised when a resource cannot be sanitized or serialized."""

    pass


class PluginError(MigrationError):
    """Raised when a transform plugin fails for one resource."""

    def __init__(self, message: str, plugin: str = ""):
        super().__init__(message)
        self.plugin = plugin


class ApplyError(MigrationError):
    """Raised when the destination rejects a resource."""

    pass


class TransferError(MigrationError):
    """Raised when any stage of a volume transfer fails."""

    pass
