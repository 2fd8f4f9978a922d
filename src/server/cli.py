"""CLI for the server command.

Provides the `server` verb for ingress daemon management (start/stop/status).
"""

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path

from config import ConfigError, GatewayConfig, load_config
from ingress.rules import RuleError
from server.httpd import Server
from server.daemon import (
    LOG_DATEFMT,
    LOG_FORMAT,
    daemonize,
    stop_daemon,
    check_status,
    probe_host,
    DEFAULT_LOG_FILE,
)

logger = logging.getLogger(__name__)


def _add_common_args(parser: argparse.ArgumentParser):
    """Arguments shared by start, stop and status."""
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Config file (default: $HEADGATE_CONFIG or FHS search path)",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        help="Port to listen on (overrides config)",
    )
    parser.add_argument(
        "--bind", "-b",
        help="Address to bind to (overrides config)",
    )


def _load(args) -> GatewayConfig:
    """Config file plus command-line overrides.

    Raises:
        ConfigError: On a missing or invalid config
    """
    config = load_config(args.config)
    overrides = {}
    for key in ("port", "bind", "backend", "public_url"):
        value = getattr(args, key, None)
        if value is not None:
            overrides[key] = value
    if overrides:
        config = dataclasses.replace(config, **overrides)
    return config


def _create_server(config: GatewayConfig) -> Server:
    """Create a Server from config, failing on bad rules."""
    try:
        return Server.from_config(config)
    except RuleError as e:
        raise ConfigError(f"Invalid rule: {e}") from e


def _handle_start(argv):
    """Handle 'server start': daemonize the ingress."""
    parser = argparse.ArgumentParser(
        prog="headgate server start",
        description="Start the ingress daemon (background)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    parser.add_argument(
        "--backend",
        help="Backend base URL (overrides config)",
    )
    parser.add_argument(
        "--public-url",
        help="Externally visible URL for Location rewriting (overrides config)",
    )
    parser.add_argument(
        "--log",
        type=Path,
        default=DEFAULT_LOG_FILE,
        help="Log file path for daemon output",
    )
    parser.add_argument(
        "--foreground",
        action="store_true",
        help="Run in foreground instead of daemonizing",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)

    try:
        config = _load(args)
        if args.foreground:
            server = _create_server(config)
        else:
            # Validate rules before forking
            _create_server(config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 1

    if config.source:
        logger.info("Using config at: %s", config.source)

    if args.foreground:
        return _run_foreground(server, config)

    def server_factory():
        daemon_server = _create_server(config)
        daemon_server.start()
        return daemon_server

    return daemonize(
        server_factory=server_factory,
        port=config.port,
        host=probe_host(config.bind),
        log_file=args.log,
    )


def _run_foreground(server: Server, config: GatewayConfig):
    """Run the ingress in the foreground."""
    try:
        server.start()
    except RuntimeError as e:
        logger.error("Failed to start ingress: %s", e)
        return 1

    print(f"\nIngress running at http://{server.bind}:{server.port}")
    print(f"Backend: {config.backend}")
    print(f"Capability version: {config.capability_version}")
    print("\nPress Ctrl+C to stop...")

    server.serve_forever()
    return 0


def _handle_stop(argv):
    """Handle 'server stop': stop the daemon."""
    parser = argparse.ArgumentParser(
        prog="headgate server stop",
        description="Stop the ingress daemon",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    args = parser.parse_args(argv)

    try:
        config = _load(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    port = config.port
    status = check_status(port, probe_host(config.bind))
    if not status["running"]:
        print(f"Ingress not running (port {port})")
        return 0

    print(f"Stopping ingress (PID {status['pid']}, port {port})...")
    if stop_daemon(port):
        print("Ingress stopped")
        return 0

    print("Error: Failed to stop ingress", file=sys.stderr)
    return 1


def _handle_status(argv):
    """Handle 'server status': check daemon status."""
    parser = argparse.ArgumentParser(
        prog="headgate server status",
        description="Check ingress daemon status",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    args = parser.parse_args(argv)

    try:
        config = _load(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    port = config.port
    status = check_status(port, probe_host(config.bind))

    if args.json:
        print(json.dumps(status, indent=2))
    elif status["running"]:
        health = "healthy" if status["healthy"] else "unhealthy"
        print(f"Ingress: running (PID {status['pid']}, port {port}, {health})")
    else:
        print(f"Ingress: not running (port {port})")

    # Exit codes: 0 = running+healthy, 1 = not running, 2 = running+unhealthy
    if not status["running"]:
        return 1
    if not status["healthy"]:
        return 2
    return 0


def main(argv=None):
    """CLI entry point for server command.

    Dispatches to start/stop/status subcommands.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    subcommands = {
        "start": _handle_start,
        "stop": _handle_stop,
        "status": _handle_status,
    }

    if not argv or argv[0] in ("-h", "--help"):
        print("Usage: headgate server <command> [options]")
        print()
        print("Commands:")
        print("  start    Start the ingress daemon")
        print("  stop     Stop the ingress daemon")
        print("  status   Check ingress daemon status")
        print()
        print("Run 'headgate server <command> --help' for command-specific options.")
        return 0

    subcmd = argv[0]
    if subcmd not in subcommands:
        print(f"Error: Unknown server command '{subcmd}'")
        print(f"Available commands: {', '.join(subcommands)}")
        return 1

    return subcommands[subcmd](argv[1:])


if __name__ == "__main__":
    sys.exit(main())
