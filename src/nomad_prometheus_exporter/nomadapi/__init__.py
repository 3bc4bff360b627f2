"""Nomad HTTP API client package.

Provides a lightweight HTTP client for the Nomad API that returns raw,
validated API response types with minimal processing. Business logic and
metric generation are handled by collector modules.

Exports:
    NomadApiClient: HTTP client with token passthrough, TLS and error handling.
    NomadApiError: Base class of the client's errors.
    NotFoundError: Entity not found.
    TransportError: Request failed in transit or with an error status.
    ResponseValidationError: Payload did not match the expected schema.
    types: Module containing Pydantic models for API responses.
    DEFAULT_ADDRESS: Default Nomad API address.
    DEFAULT_TIMEOUT: Default HTTP request timeout.
"""

from . import types
from .client import (
    DEFAULT_ADDRESS,
    DEFAULT_TIMEOUT,
    NomadApiClient,
    NomadApiError,
    NotFoundError,
    ResponseValidationError,
    TransportError,
)

__all__ = [
    "DEFAULT_ADDRESS",
    "DEFAULT_TIMEOUT",
    "NomadApiClient",
    "NomadApiError",
    "NotFoundError",
    "ResponseValidationError",
    "TransportError",
    "types",
]
