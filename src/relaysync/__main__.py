"""CLI entry point for the relaysync synchronizer.

Runs the service continuously with a Prometheus metrics server, or a single
cycle with ``--once``. Both configuration files are loaded and validated
before any database or relay is contacted.

Exit codes: 0 success, 1 runtime failure, 2 configuration error,
130 interrupted.

Examples:
    ```bash
    python -m relaysync
    python -m relaysync --once --log-level DEBUG
    python -m relaysync --config config/synchronizer.yaml --log-json
    python -m relaysync --reset-cursor wss://relay.example.com
    ```
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Any

from relaysync.core import Archive, ConfigurationError, DatabaseError, MetricsServer
from relaysync.core.logger import Logger, configure_logging
from relaysync.core.yaml import load_yaml
from relaysync.services.synchronizer import Synchronizer, SynchronizerConfig


CONFIG_BASE = Path("config")
SERVICE_CONFIG = CONFIG_BASE / "synchronizer.yaml"
ARCHIVE_CONFIG = CONFIG_BASE / "archive.yaml"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

logger = Logger("cli")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="relaysync",
        description="Synchronize events from Nostr relays into PostgreSQL",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help=f"Synchronizer config path (default: {SERVICE_CONFIG})",
    )

    parser.add_argument(
        "--archive-config",
        type=Path,
        help=f"Archive config path (default: {ARCHIVE_CONFIG})",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )

    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit one JSON object per log line",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one cycle and exit (default: run continuously)",
    )

    parser.add_argument(
        "--reset-cursor",
        action="append",
        default=[],
        metavar="URL",
        help=(
            "Forget the stored cursor of a relay and exit (repeatable); "
            "a running service keeps the reset when it next saves"
        ),
    )

    return parser.parse_args(argv)


def _load_yaml_dict(path: Path | None, default: Path) -> dict[str, Any]:
    """Load ``path``; a missing default file yields ``{}``, a missing explicit one is an error."""
    if path is not None:
        return load_yaml(path)
    if not default.exists():
        logger.warning("config_not_found", path=str(default))
        return {}
    return load_yaml(default)


def load_configs(args: argparse.Namespace) -> tuple[Archive, SynchronizerConfig]:
    """Build the archive and validate the service config without connecting.

    Raises:
        ConfigurationError: Any file is missing, malformed or invalid.
    """
    archive = Archive.from_dict(_load_yaml_dict(args.archive_config, ARCHIVE_CONFIG))
    service_dict = _load_yaml_dict(args.config, SERVICE_CONFIG)
    try:
        config = SynchronizerConfig.model_validate(service_dict)
    except ValueError as e:
        raise ConfigurationError(f"Invalid synchronizer configuration: {e}") from e
    return archive, config


async def run_service(service: Synchronizer, *, once: bool) -> int:
    """Run one cycle, or run until a shutdown signal arrives.

    Returns:
        Exit code.
    """

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("shutdown_signal", signal=sig.name)
        service.request_shutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        # One-shot mode: single cycle, no metrics server
        if once:
            async with service:
                await service.run()
            logger.info("synchronizer_completed")
            return EXIT_OK

        metrics_config = service.config.metrics
        async with MetricsServer(metrics_config), service:
            if metrics_config.enabled:
                logger.info(
                    "metrics_server_started",
                    host=metrics_config.host,
                    port=metrics_config.port,
                    path=metrics_config.path,
                )
            await service.run_forever()
        return EXIT_OK
    except Exception as e:  # Intentionally broad: CLI error boundary
        logger.error("synchronizer_failed", error=str(e), error_type=type(e).__name__)
        return EXIT_FAILURE
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


async def reset_cursors(service: Synchronizer, urls: list[str]) -> int:
    try:
        removed = await service.reset_cursors(urls)
    except ValueError as e:
        logger.error("invalid_relay_url", error=str(e))
        return EXIT_CONFIG
    logger.info("cursors_reset", requested=len(urls), removed=removed)
    return EXIT_OK


async def main(argv: list[str] | None = None) -> int:
    """Parse arguments, validate configuration, then run the synchronizer."""
    args = parse_args(argv)
    configure_logging(args.log_level, json_output=args.log_json)

    try:
        archive, config = load_configs(args)
    except ConfigurationError as e:
        logger.error("configuration_invalid", error=str(e))
        return EXIT_CONFIG

    service = Synchronizer(archive, config)
    try:
        async with archive:
            if args.reset_cursor:
                return await reset_cursors(service, args.reset_cursor)
            return await run_service(service, once=args.once)
    except DatabaseError as e:
        logger.error("database_unavailable", error=str(e), error_type=type(e).__name__)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.info("interrupted")
        return EXIT_INTERRUPTED


def cli() -> None:
    """Synchronous entry point for console_scripts."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    cli()
