"""Base HTTP client for the Kubernetes API.

This module provides an async HTTP client with connection pooling, rate
limiting, bounded retries and structured request logging. One client owns
one cluster connection; all calls against that cluster share its limiter.
"""

import ssl
import time
from typing import Any

import httpx

from kube_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InvalidResourceError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
)
from kube_migration.client.kubeconfig import ClusterSettings
from kube_migration.client.rate_limiter import TokenBucketRateLimiter
from kube_migration.utils.logging import (
    get_logger,
    log_api_request,
    sanitize_payload,
    truncate_payload,
)
from kube_migration.utils.retry import api_retrying

logger = get_logger(__name__)


class BaseAPIClient:
    """Base async HTTP client with retry logic and rate limiting.

    This client provides:
    - Connection pooling
    - Token-bucket rate limiting (qps / burst)
    - Request logging with redacted payloads
    - Bounded retries with exponential backoff for transient failures
    - Mapping of HTTP status codes to exception types
    """

    def __init__(
        self,
        settings: ClusterSettings,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize base API client.

        Args:
            settings: Resolved cluster settings
            log_payloads: Enable request payload logging at DEBUG level
            max_payload_size: Maximum payload size (chars) to log before truncation
            transport: Optional httpx transport (used by tests)
        """
        self.settings = settings
        self.base_url = settings.host.rstrip("/")
        self.log_payloads = log_payloads
        self.max_payload_size = max_payload_size

        performance = settings.performance
        self.rate_limiter = TokenBucketRateLimiter(performance.qps, performance.burst)

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json", "User-Agent": "kube-bridge"},
            timeout=httpx.Timeout(performance.timeout, connect=10.0),
            limits=httpx.Limits(
                max_connections=max(performance.burst, 10),
                max_keepalive_connections=max(performance.burst // 2, 5),
            ),
            verify=self._build_verify(),
            transport=transport,
        )

        logger.debug(
            "client_initialized",
            cluster=settings.name,
            base_url=self.base_url,
            qps=performance.qps,
            burst=performance.burst,
        )

    @property
    def cluster_name(self) -> str:
        return self.settings.name

    def _build_verify(self) -> ssl.SSLContext | bool:
        """Build the TLS context from CA bundle and client certificate."""
        if not self.settings.verify_ssl:
            return False
        if not (self.settings.ca_file or self.settings.cert_file):
            return True

        context = ssl.create_default_context(cafile=self.settings.ca_file)
        if self.settings.cert_file and self.settings.key_file:
            context.load_cert_chain(self.settings.cert_file, self.settings.key_file)
        return context

    def _build_headers(self, content_type: str | None) -> dict[str, str]:
        headers: dict[str, str] = {}
        authorization = self.settings.authorization()
        if authorization:
            headers["Authorization"] = authorization
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _handle_error_response(self, response: httpx.Response) -> None:
        """Handle error responses by raising appropriate exceptions.

        Raises:
            AuthenticationError: For 401 responses
            AuthorizationError: For 403 responses
            NotFoundError: For 404 responses
            ConflictError: For 409 responses
            InvalidResourceError: For 422 responses
            RateLimitError: For 429 responses
            ServerError: For 5xx responses
            APIError: For other error responses
        """
        status_code = response.status_code

        try:
            error_data = response.json()
        except ValueError:
            error_data = {"message": response.text[:500]}
        if not isinstance(error_data, dict):
            error_data = {"message": str(error_data)}

        reason = error_data.get("reason") or response.reason_phrase

        if status_code == 401:
            raise AuthenticationError("Authentication failed", status_code, error_data)
        elif status_code == 403:
            raise AuthorizationError("Forbidden", status_code, error_data)
        elif status_code == 404:
            raise NotFoundError("Not found", status_code, error_data)
        elif status_code == 409:
            raise ConflictError(f"Conflict ({reason})", status_code, error_data)
        elif status_code == 422:
            raise InvalidResourceError("Invalid resource", status_code, error_data)
        elif status_code == 429:
            retry_after = response.headers.get("Retry-After")
            retry_seconds = int(retry_after) if retry_after and retry_after.isdigit() else None
            raise RateLimitError(
                "Rate limit exceeded",
                status_code=status_code,
                response=error_data,
                retry_after=retry_seconds,
            )
        elif 500 <= status_code < 600:
            raise ServerError(f"Server error ({reason})", status_code, error_data)
        else:
            raise APIError(f"API error ({reason})", status_code, error_data)

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json_data: dict[str, Any] | None,
        content_type: str | None,
    ) -> httpx.Response:
        """Send one rate-limited request and map errors to exceptions."""
        await self.rate_limiter.acquire()

        if self.log_payloads and json_data is not None:
            logger.debug(
                "api_request_payload",
                method=method,
                path=path,
                payload=truncate_payload(sanitize_payload(json_data), self.max_payload_size),
            )

        start_time = time.time()
        try:
            response = await self.client.request(
                method,
                path,
                params=params,
                json=json_data,
                headers=self._build_headers(content_type if json_data is not None else None),
            )
        except httpx.TimeoutException as e:
            logger.warning("timeout_error", method=method, path=path, error=str(e))
            raise NetworkError(f"Request timeout: {e}") from e
        except httpx.TransportError as e:
            logger.warning("network_error", method=method, path=path, error=str(e))
            raise NetworkError(f"Network error: {e}") from e

        log_api_request(
            logger,
            method=method,
            url=path,
            status_code=response.status_code,
            duration_ms=(time.time() - start_time) * 1000,
            cluster=self.cluster_name,
        )

        if response.status_code >= 400:
            self._handle_error_response(response)

        return response

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        content_type: str = "application/json",
    ) -> httpx.Response:
        """Make an HTTP request under the shared retry policy.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE, ...)
            path: API path (e.g. ``/api/v1/namespaces``)
            params: Query parameters
            json_data: JSON request body
            content_type: Content type used when a body is sent

        Returns:
            The successful response

        Raises:
            NetworkError: For network-related errors after retries
            Various APIError subclasses: For API errors
        """
        performance = self.settings.performance
        async for attempt in api_retrying(
            max_attempts=performance.retry_attempts,
            min_wait=performance.retry_backoff_min,
            max_wait=performance.retry_backoff_max,
        ):
            with attempt:
                return await self._send(method, path, params, json_data, content_type)
        raise RuntimeError("Unexpected retry loop exit")  # pragma: no cover

    async def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make a GET request and decode the JSON body."""
        response = await self.request("GET", path, params=params)
        return response.json() if response.content else {}

    async def get_text(self, path: str, params: dict[str, Any] | None = None) -> str:
        """Make a GET request and return the raw body (pod logs)."""
        response = await self.request("GET", path, params=params)
        return response.text

    async def post(self, path: str, json_data: dict[str, Any]) -> dict[str, Any]:
        """Make a POST request."""
        response = await self.request("POST", path, json_data=json_data)
        return response.json() if response.content else {}

    async def put(self, path: str, json_data: dict[str, Any]) -> dict[str, Any]:
        """Make a PUT request."""
        response = await self.request("PUT", path, json_data=json_data)
        return response.json() if response.content else {}

    async def delete(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make a DELETE request."""
        response = await self.request("DELETE", path, params=params)
        return response.json() if response.content else {}

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self.client.aclose()
        logger.debug("client_closed", cluster=self.cluster_name)

    async def __aenter__(self) -> "BaseAPIClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
