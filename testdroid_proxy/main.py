"""Testdroid Proxy: main entry point.

Usage:
    python3 -m testdroid_proxy -c URL -u USER -p PASS     Start the server
    python3 -m testdroid_proxy start -c URL -u USER ...   Same, explicit
    python3 -m testdroid_proxy regenerate-key             Generate a new API key
"""

from __future__ import annotations

import argparse
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI

from testdroid_proxy import __version__
from testdroid_proxy.api.device import router as device_router
from testdroid_proxy.auth import APIKeyMiddleware
from testdroid_proxy.config import ServerConfig, read_user_config
from testdroid_proxy.device.flash import FlashOrchestrator
from testdroid_proxy.device.pool import DevicePool
from testdroid_proxy.device.testdroid import TestdroidClient
from testdroid_proxy.models import SelectionStrategy

logger = logging.getLogger("testdroid-proxy")


def build_pool(config: ServerConfig, client) -> DevicePool:  # noqa: ANN001
    """Wire a DevicePool and its flasher from configuration."""
    flasher = FlashOrchestrator(
        client,
        project_name=config.flash_project,
        strategy=config.selection,
    )
    return DevicePool(
        client,
        client_id=config.client_id,
        access_token=config.access_token,
        proxy_host=config.proxy_host,
        flasher=flasher,
        session_timeout=config.session_timeout,
        strategy=config.selection,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the cloud client on startup and close it on shutdown."""
    config: ServerConfig = app.state.config

    client = None
    if app.state.device_pool is None:
        client = TestdroidClient(config.cloud_url, config.username, config.password)
        app.state.device_pool = build_pool(config, client)

    logger.info(
        "Server started on http://%s:%d for %s (selection: %s)",
        config.host, config.port, config.cloud_url, config.selection.value,
    )

    yield

    # Sessions are the caller's to release; warn about ones left behind
    if app.state.handles:
        logger.warning(
            "Shutting down with %d unreleased device session(s): %s",
            len(app.state.handles), sorted(app.state.handles),
        )
    if client is not None:
        await client.close()
    logger.info("Server stopped")


def create_app(config: ServerConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if config is None:
        config = ServerConfig()

    app = FastAPI(
        title="Testdroid Proxy",
        version=__version__,
        description="Acquire flashed devices from a Testdroid device cloud",
        lifespan=lifespan,
    )

    # Store shared state
    app.state.config = config
    app.state.device_pool = None
    app.state.handles = {}

    # Auth middleware
    app.add_middleware(APIKeyMiddleware, api_key=config.api_key)

    # Routes
    app.include_router(device_router)

    @app.get("/")
    async def root() -> str:
        return "Server running"

    @app.get("/health")
    async def health() -> dict:
        """Health check with the number of sessions held through this server."""
        return {
            "status": "ok",
            "version": __version__,
            "active_sessions": len(app.state.handles),
        }

    return app


def _add_server_flags(parser: argparse.ArgumentParser) -> None:
    """Add server flags to a subcommand parser."""
    parser.add_argument("--cloud-url", "-c", default=None, help="Cloud URL for Testdroid")
    parser.add_argument("--username", "-u", default=None, help="Username for Testdroid api")
    parser.add_argument("--password", "-p", default=None, help="Password for Testdroid user")
    parser.add_argument("--client-id", default=None, help="Client id used to sign build URLs")
    parser.add_argument("--access-token", default=None, help="Access token used to sign build URLs")
    parser.add_argument(
        "--proxy-host", default=None,
        help="Address clients use to reach the adb/marionette proxies",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=80, help="Bind port (default: 80)")
    parser.add_argument(
        "--selection", choices=[s.value for s in SelectionStrategy], default=None,
        help="How to pick among eligible devices (default: first)",
    )
    parser.add_argument("--flash-project", default=None, help="Name of the flashing project")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")


def config_from_args(args: argparse.Namespace, user_config: dict | None = None) -> ServerConfig:
    """Merge CLI flags over ~/.testdroid-proxy/config.json values.

    Raises ValueError if the cloud credentials are missing from both.
    """
    user_config = read_user_config() if user_config is None else user_config

    def pick(flag: str, key: str, default=None):  # noqa: ANN001, ANN202
        value = getattr(args, flag)
        return value if value is not None else user_config.get(key, default)

    config = ServerConfig(
        host=args.host,
        port=args.port,
        cloud_url=pick("cloud_url", "cloud_url", ""),
        username=pick("username", "username", ""),
        password=pick("password", "password", ""),
        client_id=pick("client_id", "client_id", ""),
        access_token=pick("access_token", "access_token", ""),
        proxy_host=pick("proxy_host", "proxy_host", "127.0.0.1"),
        flash_project=pick("flash_project", "flash_project", "flash-fxos"),
        selection=pick("selection", "selection", SelectionStrategy.FIRST.value),
        session_timeout=user_config.get("session_timeout"),
        default_retries=int(user_config.get("default_retries", 2)),
    )
    missing = [name for name in ("cloud_url", "username", "password") if not getattr(config, name)]
    if missing:
        raise ValueError(f"Missing required settings: {', '.join(missing)}")
    return config


def _cmd_start(args: argparse.Namespace) -> None:
    """Start the server in the foreground."""
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        config = config_from_args(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    if not config.client_id or not config.access_token:
        logger.warning("No signing credentials configured; build URLs will not be fetchable")

    print(f"Testdroid Proxy v{__version__}")
    print(f"  http://{config.host}:{config.port}")
    print(f"  Cloud: {config.cloud_url} (user: {config.username})")
    if config.api_key:
        print(f"  API key: {config.api_key[:8]}...{config.api_key[-4:]}")
    print()

    app = create_app(config=config)
    uv_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level="debug" if args.verbose else "info",
    )
    server = uvicorn.Server(uv_config)
    try:
        server.run()
    except KeyboardInterrupt:
        pass  # Clean shutdown already handled by lifespan


def cli(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Testdroid Proxy: hand out flashed devices from a device cloud",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.set_defaults(command=None)

    subparsers = parser.add_subparsers(dest="command")

    start_parser = subparsers.add_parser("start", help="Start the server")
    _add_server_flags(start_parser)

    subparsers.add_parser("regenerate-key", help="Generate a new API key")

    argv = sys.argv[1:] if argv is None else argv

    # No subcommand → start. Server flags take values, so they cannot go
    # through the top-level parser without being mistaken for a command.
    if argv and (argv[0] in subparsers.choices or argv[0] in ("-h", "--help", "--version")):
        args = parser.parse_args(argv)
    else:
        args = start_parser.parse_args(argv)
        args.command = "start"

    if args.command == "start":
        _cmd_start(args)
    elif args.command == "regenerate-key":
        key = ServerConfig.regenerate_api_key()
        print(f"New API key: {key}")


if __name__ == "__main__":
    cli()
