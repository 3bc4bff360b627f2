"""HTTP server for the Nomad Prometheus Exporter."""

import json
import logging
import os
import pathlib

import prometheus_client
import prometheus_client.core
import pydantic
import starlette.applications
import starlette.requests
import starlette.responses
import starlette.routing
import structlog

from . import collector, nomadapi
from .collectors import allocations

CONFIG_ENV_VAR = "NOMAD_EXPORTER_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "/config.json"
logger = structlog.get_logger(__name__)

INDEX_TEMPLATE = """<html>
<head><title>Nomad Exporter</title></head>
<body>
<h1>Nomad Exporter</h1>
<p><a href='{metrics_path}'>Metrics</a></p>
</body>
</html>
"""


class ExporterConfig(pydantic.BaseModel):
    """Configuration for the Nomad Prometheus Exporter."""

    nomad_server: str = pydantic.Field(
        nomadapi.DEFAULT_ADDRESS,
        description="HTTP API address of a Nomad server or agent",
    )
    nomad_timeout: float = pydantic.Field(
        nomadapi.DEFAULT_TIMEOUT,
        description="Request timeout in seconds",
        gt=0,
    )
    nomad_token_file: str | None = pydantic.Field(
        None,
        description="Path to file containing a Nomad ACL token",
    )
    tls_ca_file: str | None = pydantic.Field(
        None,
        description="PEM-encoded CA cert file used to verify the Nomad server",
    )
    tls_ca_path: str | None = pydantic.Field(
        None,
        description="Directory of PEM-encoded CA cert files",
    )
    tls_cert_file: str | None = pydantic.Field(
        None,
        description="Client certificate for Nomad communication",
    )
    tls_key_file: str | None = pydantic.Field(
        None,
        description="Private key for tls_cert_file",
    )
    tls_insecure: bool = pydantic.Field(
        False,  # noqa: FBT003
        description="Disable TLS certificate verification",
    )
    tls_server_name: str | None = pydantic.Field(
        None,
        description="SNI hostname for the Nomad TLS connection",
    )
    listen_address: str = pydantic.Field(
        "0.0.0.0",  # noqa: S104
        description="Address to listen on",
    )
    port: int = pydantic.Field(9172, description="HTTP server port", gt=0, lt=65536)
    metrics_path: str = pydantic.Field(
        "/metrics",
        description="URL path for metrics endpoint",
    )
    max_concurrency: int | None = pydantic.Field(
        allocations.DEFAULT_MAX_CONCURRENCY,
        description="Maximum concurrent allocation lookups, null for unbounded",
        ge=1,
    )
    dedupe_node_lookups: bool = pydantic.Field(
        True,  # noqa: FBT003
        description="Share node lookups between allocations within one scrape",
    )
    log_level: str = pydantic.Field("INFO", description="Logging level")

    @pydantic.field_validator("metrics_path")
    @classmethod
    def _check_metrics_path(cls, value: str) -> str:
        if not value.startswith("/") or value == "/":
            msg = "metrics_path must start with '/' and must not be the root path"
            raise ValueError(msg)
        return value


def configure_logging(log_level_name: str) -> None:
    """Configure structlog for logfmt output."""
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            structlog.processors.LogfmtRenderer(
                key_order=("timestamp", "level", "msg"),
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(config_path: str) -> ExporterConfig:
    """Load configuration from JSON file."""
    path = pathlib.Path(config_path)
    if not path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with path.open("r") as f:
        data = json.load(f)

    return ExporterConfig.model_validate(data)


def create_client(config: ExporterConfig) -> nomadapi.NomadApiClient:
    """Construct the Nomad API client from validated config."""
    return nomadapi.NomadApiClient(
        base_url=config.nomad_server,
        token_file=config.nomad_token_file,
        timeout=config.nomad_timeout,
        tls_ca_file=config.tls_ca_file,
        tls_ca_path=config.tls_ca_path,
        tls_cert_file=config.tls_cert_file,
        tls_key_file=config.tls_key_file,
        tls_insecure=config.tls_insecure,
        tls_server_name=config.tls_server_name,
        max_connections=config.max_concurrency,
    )


def create_registry_with_collectors(
    nomad_client: nomadapi.NomadApiClient,
    max_concurrency: int | None = allocations.DEFAULT_MAX_CONCURRENCY,
    dedupe_node_lookups: bool = True,
) -> prometheus_client.core.CollectorRegistry:
    """Create a Prometheus registry with the Nomad collector.

    Creates a custom registry (not the global one) and registers the
    allocation collector. Dependencies are injected into the fetcher
    function at build time.

    Args:
        nomad_client: Shared Nomad API client.
        max_concurrency: Maximum concurrent allocation lookups per scrape.
        dedupe_node_lookups: Share node lookups within a scrape.

    Returns:
        Configured Prometheus registry with injected dependencies.
    """
    registry = prometheus_client.core.CollectorRegistry()

    # Lambda captures the client and fan-out settings in a closure,
    # creating a zero-argument fetcher
    allocations_collector = collector.NomadCollector(
        fetcher=lambda: allocations.fetch(
            nomad_client,
            max_concurrency=max_concurrency,
            dedupe_node_lookups=dedupe_node_lookups,
        ),
        generator=allocations.generate_metrics,
        describer=allocations.describe_metrics,
        scraper_description=f"Nomad API {nomad_client.base_url}",
    )
    registry.register(allocations_collector)
    logger.info(
        "Registered collector",
        collector="allocations",
        max_concurrency=max_concurrency,
    )

    return registry


def create_starlette_app(
    metrics_path: str,
    registry: prometheus_client.core.CollectorRegistry,
) -> starlette.applications.Starlette:
    """Create a Starlette application for serving Prometheus metrics.

    Args:
        metrics_path: URL path for metrics endpoint (e.g., "/metrics").
        registry: Prometheus collector registry.

    Returns:
        Configured Starlette application.
    """
    index_page = INDEX_TEMPLATE.format(metrics_path=metrics_path)

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Run one collection cycle and serve Prometheus metrics.

        Args:
            request: The incoming HTTP request.

        Returns:
            PlainTextResponse with metrics in Prometheus exposition format.
        """
        metrics_output = prometheus_client.generate_latest(registry)
        logger.info(
            "HTTP request",
            client_ip=request.client.host if request.client else "unknown",
            method=request.method,
            path=request.url.path,
        )
        return starlette.responses.PlainTextResponse(
            content=metrics_output,
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    def index_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        logger.debug("HTTP request", method=request.method, path=request.url.path)
        return starlette.responses.HTMLResponse(index_page)

    routes = [
        starlette.routing.Route(metrics_path, metrics_endpoint, methods=["GET"]),
        starlette.routing.Route("/", index_endpoint, methods=["GET"]),
    ]

    return starlette.applications.Starlette(routes=routes)


def create_exporter(config: ExporterConfig) -> starlette.applications.Starlette:
    """Construct the exporter ASGI app from validated config."""
    nomad_client = create_client(config)
    logger.info("Created shared Nomad client", base_url=config.nomad_server)

    registry = create_registry_with_collectors(
        nomad_client=nomad_client,
        max_concurrency=config.max_concurrency,
        dedupe_node_lookups=config.dedupe_node_lookups,
    )

    return create_starlette_app(
        metrics_path=config.metrics_path,
        registry=registry,
    )


def resolve_config_path(config_path: str | None = None) -> str:
    """Return the explicit config path or the environment default."""
    return config_path or os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)


def create_app(config_path: str | None = None) -> starlette.applications.Starlette:
    """Create the exporter ASGI app using a config path or environment default."""
    config = load_config(resolve_config_path(config_path))
    configure_logging(config.log_level)
    return create_exporter(config)
