"""Command line entry point for the agora HTTP service."""

from __future__ import annotations

import argparse
import logging
import sys

from aiohttp import web

from .app import create_app
from .config import load_config_from_env


def _run_serve(args: argparse.Namespace) -> int:
    config = load_config_from_env().with_overrides(
        db_path=args.db,
        host=args.host,
        port=args.port,
        environment=args.env,
        max_connections_per_user=args.max_connections_per_user,
        sweep_interval_s=args.sweep_interval,
    )
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="agora context and activity service")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp server")
    serve_parser.add_argument("--host", default=None, help="Host to bind (AGORA_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind (AGORA_PORT)")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database (AGORA_DB_PATH)")
    serve_parser.add_argument(
        "--env",
        choices=["development", "production"],
        default=None,
        help="Runtime environment; production enables the live-connection sweep",
    )
    serve_parser.add_argument(
        "--max-connections-per-user",
        type=int,
        default=None,
        help="Live stream connections allowed per user and channel",
    )
    serve_parser.add_argument(
        "--sweep-interval",
        type=int,
        default=None,
        help="Seconds between live-connection sweeps",
    )
    serve_parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    if args.command == "serve":
        return _run_serve(args)
    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
