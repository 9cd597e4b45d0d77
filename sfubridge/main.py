"""
Bridge server entrypoint.

Resolves configuration, initialises logging and runs the signaling API under
uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from .api.server import create_app
from .config import BridgeConfig, load_config
from .errors import ConfigurationError
from .media.memory import InMemoryEngine
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)

EXIT_CONFIGURATION = 2


@asynccontextmanager
async def lifespan(config: BridgeConfig) -> AsyncIterator[None]:
    scheme = "https" if config.http.certfile else "http"
    LOG.info("Web server is listening on %s://%s:%s", scheme, config.http.host, config.http.port)
    try:
        yield
    finally:
        LOG.info("Bridge server shutting down")


def check_tls_files(config: BridgeConfig) -> None:
    """Reject a TLS setup that names a missing certificate or key."""

    http = config.http
    if bool(http.certfile) != bool(http.keyfile):
        raise ConfigurationError("http.certfile and http.keyfile must be configured together")
    for label, path in (("certificate", http.certfile), ("key", http.keyfile)):
        if path and not Path(path).expanduser().is_file():
            raise ConfigurationError(f"TLS {label} file not found: {path}")


async def serve(config: BridgeConfig) -> None:
    """
    Run the signaling API inside an asyncio loop.

    Parameters
    ----------
    config:
        Fully resolved bridge configuration.
    """

    import uvicorn

    engine = InMemoryEngine(bind_plain_sockets=config.media.bind_plain_sockets)

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        async with lifespan(config):
            yield

    app = create_app(config=config, engine=engine, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=config.http.host,
        port=config.http.port,
        ssl_certfile=config.http.certfile,
        ssl_keyfile=config.http.keyfile,
        ws_ping_interval=config.http.ws_ping_interval or None,
        ws_ping_timeout=config.http.ws_ping_timeout or None,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SFU to peer engine signaling bridge")
    parser.add_argument("--config", default=None, help="YAML configuration file")
    parser.add_argument("--host", default=None, help="bind host for the signaling server")
    parser.add_argument("--port", type=int, default=None, help="bind port for the signaling server")
    parser.add_argument("--certfile", default=None, help="TLS certificate (PEM)")
    parser.add_argument("--keyfile", default=None, help="TLS private key (PEM)")
    parser.add_argument("--log-level", default="INFO", help="root log level")
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> BridgeConfig:
    config = load_config(args.config)
    if args.host:
        config.http.host = args.host
    if args.port:
        config.http.port = args.port
    if args.certfile:
        config.http.certfile = args.certfile
    if args.keyfile:
        config.http.keyfile = args.keyfile
    check_tls_files(config)
    return config


def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(level=getattr(logging, str(args.log_level).upper(), logging.INFO))

    try:
        config = resolve_config(args)
    except ConfigurationError as exc:
        LOG.error("Configuration error: %s", exc)
        return EXIT_CONFIGURATION

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Bridge interrupted by user.")
    return 0


if __name__ == "__main__":
    sys.exit(run())
