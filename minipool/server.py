#!/usr/bin/env python3
"""
Minipool API server.

Serves the REST gateway on BIND_ADDR and Prometheus metrics on
PROMETHEUS_BIND_ADDR from a single event loop. Blocking RPC calls run on the
offload pool sized by OFFLOAD_WORKERS.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from . import __version__
from .logging_config import configure_logging
from .metrics import HttpMetrics, create_metrics_app
from .middleware import MetricsMiddleware, RequestIdMiddleware
from .offload import BlockingOffload
from .routes import INVALID_BLOCK_HEIGHT, build_route_table, index, redirect_to_index
from .rpc_client import BitcoinRpcClient
from .settings import MinipoolSettings

logger = structlog.get_logger(__name__)


def create_rpc_client(settings: MinipoolSettings) -> BitcoinRpcClient:
    return BitcoinRpcClient(
        settings.bitcoin_rpc_url,
        settings.bitcoin_rpc_user,
        settings.bitcoin_rpc_pass.get_secret_value(),
        timeout=settings.rpc_timeout,
    )


async def _invalid_path_parameter(request: Request, exc: RequestValidationError) -> PlainTextResponse:
    logger.info("invalid_path_parameter", path=request.url.path, errors=exc.errors())
    return PlainTextResponse(INVALID_BLOCK_HEIGHT, status_code=400)


def create_app(
    settings: MinipoolSettings,
    client: Optional[BitcoinRpcClient] = None,
    offload: Optional[BlockingOffload] = None,
    metrics: Optional[HttpMetrics] = None,
) -> FastAPI:
    """Assemble the API app; shared state is fixed before the first request."""
    rpc = client if client is not None else create_rpc_client(settings)
    pool = offload if offload is not None else BlockingOffload(settings.offload_workers)
    http_metrics = metrics if metrics is not None else HttpMetrics()

    routes = build_route_table().freeze()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("api_started", routes=[route.path for route in routes])
        yield
        pool.shutdown(wait=False)
        rpc.close()
        logger.info("api_stopped")

    app = FastAPI(
        title="Minipool",
        description="REST gateway for a Bitcoin Core RPC daemon",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.rpc = rpc
    app.state.offload = pool
    app.state.routes = routes
    app.state.metrics = http_metrics

    app.add_api_route("/", index, methods=["GET"], include_in_schema=False)
    for route in routes:
        app.add_api_route(route.path, route.endpoint, methods=["GET"], summary=route.description)
    app.router.default = redirect_to_index
    app.add_exception_handler(RequestValidationError, _invalid_path_parameter)

    # last added runs first: metrics wrap everything, including the fallback
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware, metrics=http_metrics)
    return app


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to serve()."""

    def install_signal_handlers(self) -> None:
        pass

    @contextmanager
    def capture_signals(self):
        yield


def _uvicorn_server(app: FastAPI, host: str, port: int) -> uvicorn.Server:
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
    )
    return _Server(config)


async def _run_server(server: uvicorn.Server) -> bool:
    """Serve until told to exit; False if uvicorn aborted startup."""
    try:
        await server.serve()
    except SystemExit as exc:
        # uvicorn calls sys.exit() when it cannot bind
        logger.error(
            "server_startup_failed",
            host=server.config.host,
            port=server.config.port,
            status=exc.code,
        )
        return False
    return True


async def serve(settings: MinipoolSettings, client: BitcoinRpcClient) -> int:
    """Run the API and metrics servers until a signal arrives or one fails."""
    http_metrics = HttpMetrics()
    app = create_app(settings, client=client, metrics=http_metrics)
    metrics_app = create_metrics_app(http_metrics)

    api_host, api_port = settings.api_host_port
    metrics_host, metrics_port = settings.metrics_host_port
    api_server = _uvicorn_server(app, api_host, api_port)
    metrics_server = _uvicorn_server(metrics_app, metrics_host, metrics_port)
    servers = (api_server, metrics_server)

    def stop_all() -> None:
        for server in servers:
            server.should_exit = True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_all)

    logger.info("listening", api=settings.bind_addr, metrics=settings.prometheus_bind_addr)
    tasks = [asyncio.create_task(_run_server(server)) for server in servers]
    done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

    exit_code = 0
    for task in done:
        if task.exception() is not None:
            logger.error("server_failed", error=str(task.exception()))
            exit_code = 1
        elif not task.result():
            exit_code = 1
    # a listener that never started failed to bind
    if any(not server.started for server in servers):
        exit_code = 1
    stop_all()
    await asyncio.gather(*tasks, return_exceptions=True)
    return exit_code


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="minipool", description=__doc__)
    parser.add_argument("--config", type=Path, help="Path to config YAML file")
    parser.add_argument("--bitcoin-rpc-url", help="Bitcoin RPC URL [BITCOIN_RPC_URL]")
    parser.add_argument("--bitcoin-rpc-user", help="Bitcoin RPC username [BITCOIN_RPC_USER]")
    parser.add_argument("--bitcoin-rpc-pass", help="Bitcoin RPC password [BITCOIN_RPC_PASS]")
    parser.add_argument("--bind-addr", help="Bind address for the HTTP server [BIND_ADDR]")
    parser.add_argument(
        "--prometheus-bind-addr",
        help="Prometheus address to bind/listen to [PROMETHEUS_BIND_ADDR]",
    )
    parser.add_argument("--rpc-timeout", type=float, help="RPC timeout in seconds [RPC_TIMEOUT]")
    parser.add_argument("--offload-workers", type=int, help="RPC worker threads [OFFLOAD_WORKERS]")
    parser.add_argument("--log-level", help="Log level [LOG_LEVEL]")
    parser.add_argument("--log-format", choices=("json", "console"), help="Log format [LOG_FORMAT]")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    overrides = {
        key: value
        for key, value in vars(args).items()
        if key != "config" and value is not None
    }
    try:
        settings = MinipoolSettings.load(args.config, overrides=overrides)
    except (ValidationError, ValueError) as exc:
        print(f"minipool: invalid configuration: {exc}", file=sys.stderr)
        return 2

    configure_logging(settings.log_level, settings.log_format)
    logger.info("starting_minipool", config=settings.redacted())

    try:
        client = create_rpc_client(settings)
    except (ValueError, TypeError) as exc:
        logger.error("rpc_client_init_failed", error=str(exc))
        return 1

    try:
        return asyncio.run(serve(settings, client))
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
