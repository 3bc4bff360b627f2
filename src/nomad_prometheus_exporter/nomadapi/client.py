"""Nomad HTTP API client.

Provides a thin HTTP client with optional ACL token passthrough, TLS
configuration and automatic response validation using Pydantic models.
"""

import ssl
import threading
import time
from pathlib import Path
from typing import Any

import httpx
import pydantic
import structlog

from .types import RawAllocation, RawAllocationStub, RawNode

logger = structlog.get_logger(__name__)

DEFAULT_ADDRESS = "http://localhost:4646"

DEFAULT_TIMEOUT = 30.0

DEFAULT_MAX_CONNECTIONS = 100


class NomadApiError(Exception):
    """Base class for errors raised by :class:`NomadApiClient`."""


class NotFoundError(NomadApiError):
    """Raised when the requested entity does not exist (HTTP 404)."""


class TransportError(NomadApiError):
    """Raised when a request fails in transit or returns an error status."""


class ResponseValidationError(NomadApiError):
    """Raised when a response body does not match the expected schema."""


def build_ssl_context(
    ca_file: str | None = None,
    ca_path: str | None = None,
    cert_file: str | None = None,
    key_file: str | None = None,
    insecure: bool = False,
) -> ssl.SSLContext:
    """Build the SSL context used for ``https://`` Nomad addresses.

    Args:
        ca_file: PEM-encoded CA bundle used to verify the server.
        ca_path: Directory of PEM-encoded CA certificates.
        cert_file: Client certificate for mutual TLS.
        key_file: Private key for ``cert_file``. May be omitted when the key
            is bundled in the certificate file.
        insecure: Disable hostname and certificate verification.

    Returns:
        Configured SSL context.

    Raises:
        FileNotFoundError: If one of the referenced files does not exist.
        ssl.SSLError: If the certificate material cannot be loaded.
    """
    context = ssl.create_default_context(cafile=ca_file, capath=ca_path)
    if cert_file:
        context.load_cert_chain(certfile=cert_file, keyfile=key_file or None)
    if insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class NomadApiClient:
    """HTTP client for the Nomad API.

    Exposes the three read operations the exporter needs and returns
    Pydantic-validated data objects. None of them retries; retry policy
    belongs to the caller.

    A single ``httpx.Client`` is shared by all threads, so the client can be
    used from the collector's worker pool. Can be used as a context manager
    for automatic cleanup.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_ADDRESS,
        token_file: str | Path | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        tls_ca_file: str | None = None,
        tls_ca_path: str | None = None,
        tls_cert_file: str | None = None,
        tls_key_file: str | None = None,
        tls_insecure: bool = False,
        tls_server_name: str | None = None,
        max_connections: int | None = DEFAULT_MAX_CONNECTIONS,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the API client.

        TLS settings only apply when ``base_url`` uses the ``https`` scheme.

        Args:
            base_url: Address of a Nomad server or agent
                (e.g., "http://localhost:4646").
            token_file: Path to a file containing a Nomad ACL token.
            timeout: Per-request timeout in seconds (default: 30.0).
            tls_ca_file: CA bundle used to verify the server certificate.
            tls_ca_path: Directory of CA certificates.
            tls_cert_file: Client certificate for mutual TLS.
            tls_key_file: Private key for the client certificate.
            tls_insecure: Skip server certificate verification.
            tls_server_name: SNI hostname to present to the server.
            max_connections: Size of the shared connection pool. Should be
                at least the number of worker threads using the client;
                None lifts the limit.
            transport: Optional httpx transport replacing the default
                network transport.

        Raises:
            ValueError: If base_url is empty or timeout is not positive.
            FileNotFoundError: If token_file or TLS material doesn't exist.
        """
        if not base_url:
            msg = "base_url cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)

        self.base_url = base_url.rstrip("/")
        self._timeout = timeout

        self._headers = {"Accept": "application/json"}

        if token_file:
            token_path = Path(token_file)
            if not token_path.exists():
                msg = f"Token file not found: {token_file}"
                raise FileNotFoundError(msg)
            self._headers["X-Nomad-Token"] = token_path.read_text().strip()

        self._verify: ssl.SSLContext | bool = True
        self._extensions: dict[str, Any] = {}
        if self.base_url.startswith("https://"):
            self._verify = build_ssl_context(
                ca_file=tls_ca_file,
                ca_path=tls_ca_path,
                cert_file=tls_cert_file,
                key_file=tls_key_file,
                insecure=tls_insecure,
            )
            if tls_server_name:
                self._extensions["sni_hostname"] = tls_server_name

        self._limits = httpx.Limits(max_connections=max_connections)
        self._transport = transport
        self._lock = threading.Lock()
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Get or lazily create the shared httpx client."""
        with self._lock:
            if self._client is None or self._client.is_closed:
                self._client = self._build_client()
            return self._client

    def _build_client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self._timeout,
            verify=self._verify,
            limits=self._limits,
            transport=self._transport,
        )

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager and cleanup resources."""
        self.close()

    def close(self):
        """Close the shared HTTP client if open."""
        with self._lock:
            if self._client is not None and not self._client.is_closed:
                self._client.close()

    def _make_request(self, endpoint: str) -> Any:
        """Make a GET request to the Nomad API and decode the JSON body.

        Args:
            endpoint: API endpoint path (e.g., "/v1/allocations").

        Returns:
            Decoded JSON response.

        Raises:
            NotFoundError: If the API answers 404.
            TransportError: If the request fails, returns another error
                status, or the body is not valid JSON.
        """
        start_time = time.time()
        logger.debug("Making API request", method="GET", endpoint=endpoint)

        try:
            response = self.client.get(endpoint, extensions=self._extensions)
        except httpx.HTTPError as exc:
            logger.exception(
                "API request failed",
                endpoint=endpoint,
                duration_seconds=round(time.time() - start_time, 3),
            )
            msg = f"GET {endpoint} failed: {exc}"
            raise TransportError(msg) from exc

        duration = time.time() - start_time
        if response.status_code == httpx.codes.NOT_FOUND:
            msg = f"GET {endpoint}: not found"
            raise NotFoundError(msg)

        try:
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPStatusError, ValueError) as exc:
            logger.exception(
                "API request failed",
                endpoint=endpoint,
                status_code=response.status_code,
                duration_seconds=round(duration, 3),
            )
            msg = f"GET {endpoint} failed: {exc}"
            raise TransportError(msg) from exc

        logger.debug(
            "API request completed",
            endpoint=endpoint,
            duration_seconds=round(duration, 3),
        )
        return data

    def list_allocations(self) -> list[RawAllocationStub]:
        """Fetch all allocations known to the cluster.

        Returns:
            List of validated allocation summaries, unfiltered.

        Raises:
            TransportError: If the HTTP request fails.
            ResponseValidationError: If the payload is malformed.
        """
        data = self._make_request("/v1/allocations")
        if data is None:
            return []
        try:
            return [RawAllocationStub.model_validate(item) for item in data]
        except (pydantic.ValidationError, TypeError) as exc:
            msg = f"Invalid allocation list payload: {exc}"
            raise ResponseValidationError(msg) from exc

    def get_allocation(self, alloc_id: str) -> RawAllocation:
        """Fetch the detail of one allocation.

        Args:
            alloc_id: Allocation ID.

        Returns:
            Validated allocation detail.

        Raises:
            NotFoundError: If the allocation no longer exists.
            TransportError: If the HTTP request fails.
            ResponseValidationError: If the payload is malformed.
        """
        data = self._make_request(f"/v1/allocation/{alloc_id}")
        try:
            return RawAllocation.model_validate(data)
        except pydantic.ValidationError as exc:
            msg = f"Invalid allocation payload for {alloc_id}: {exc}"
            raise ResponseValidationError(msg) from exc

    def get_node(self, node_id: str) -> RawNode:
        """Fetch the detail of one client node.

        Args:
            node_id: Node ID.

        Returns:
            Validated node detail.

        Raises:
            NotFoundError: If the node does not exist.
            TransportError: If the HTTP request fails.
            ResponseValidationError: If the payload is malformed.
        """
        data = self._make_request(f"/v1/node/{node_id}")
        try:
            return RawNode.model_validate(data)
        except pydantic.ValidationError as exc:
            msg = f"Invalid node payload for {node_id}: {exc}"
            raise ResponseValidationError(msg) from exc
