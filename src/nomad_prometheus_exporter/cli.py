"""Command line entry point for the Nomad Prometheus Exporter."""

import argparse

import structlog
import uvicorn

from . import __version__, server

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nomad-exporter",
        description="Prometheus exporter for HashiCorp Nomad allocations.",
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to the JSON configuration file "
            f"(default: ${server.CONFIG_ENV_VAR} or {server.DEFAULT_CONFIG_PATH})"
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version information and exit.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the exporter until interrupted.

    Returns:
        Process exit status; non-zero when configuration or startup fails.
    """
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"nomad_exporter {__version__}")  # noqa: T201
        return 0

    config_path = server.resolve_config_path(args.config)
    try:
        config = server.load_config(config_path)
    except (OSError, ValueError):
        server.configure_logging("INFO")
        logger.exception("Invalid configuration", config_path=config_path)
        return 1

    server.configure_logging(config.log_level)

    try:
        app = server.create_exporter(config)
    except Exception:
        logger.exception("Failed to create exporter", nomad_server=config.nomad_server)
        return 1

    logger.info(
        "Listening",
        address=config.listen_address,
        port=config.port,
        metrics_path=config.metrics_path,
    )
    # uvicorn exits with status 1 on its own if the listener cannot bind
    uvicorn.run(app, host=config.listen_address, port=config.port, access_log=False)
    return 0
