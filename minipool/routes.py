"""
Route table and request handlers for the REST API.

The table is built once at startup, frozen, and then used both to register
the FastAPI routes and to render the index page.
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

import structlog
from fastapi import Path, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response

from .offload import BlockingOffload, OffloadError
from .rpc_client import BitcoinRpcClient, BlockHash, InvalidBlockHash, RpcFailure, RpcNotFound

logger = structlog.get_logger(__name__)

# Confirmation targets offered by mempool.space and blockstream.info
CONFIRMATION_TARGETS: Tuple[int, ...] = tuple(range(1, 26)) + (144, 504, 1008)

MAX_BLOCK_HEIGHT = 2**64 - 1

RPC_ERROR = "RPC error"
BLOCK_NOT_FOUND = "Block not found"
INVALID_BLOCK_HASH = "Invalid block hash"
INVALID_BLOCK_HEIGHT = "Invalid block height"


@dataclass(frozen=True)
class RouteInfo:
    path: str
    description: str
    endpoint: Callable[..., object]


class RouteTable:
    """Ordered route list; append-only until frozen."""

    def __init__(self) -> None:
        self._routes: List[RouteInfo] = []
        self._frozen: Tuple[RouteInfo, ...] = ()
        self._is_frozen = False

    def add(self, path: str, description: str, endpoint: Callable[..., object]) -> None:
        if self._is_frozen:
            raise RuntimeError(f"route table is frozen; cannot add {path}")
        self._routes.append(RouteInfo(path, description, endpoint))

    def freeze(self) -> Tuple[RouteInfo, ...]:
        if not self._is_frozen:
            self._frozen = tuple(self._routes)
            self._is_frozen = True
        return self._frozen

    @property
    def frozen(self) -> bool:
        return self._is_frozen


def _text(body: str, status_code: int = 200) -> PlainTextResponse:
    return PlainTextResponse(body, status_code=status_code)


def _state(request: Request) -> Tuple[BitcoinRpcClient, BlockingOffload]:
    return request.app.state.rpc, request.app.state.offload


def _upstream_failure(exc: Exception, what: str, **fields) -> PlainTextResponse:
    if isinstance(exc, OffloadError):
        logger.warning("offload_unit_failed", operation=what, error=str(exc), **fields)
    else:
        logger.warning("rpc_call_failed", operation=what, error=str(exc), **fields)
    return _text(RPC_ERROR, 500)


async def get_tip_height(request: Request) -> Response:
    rpc, offload = _state(request)
    try:
        height = await offload.run(rpc.tip_height)
    except (RpcFailure, OffloadError) as exc:
        return _upstream_failure(exc, "tip_height")
    return _text(str(height))


async def get_block_by_height(
    request: Request,
    height: int = Path(ge=0, le=MAX_BLOCK_HEIGHT),
) -> Response:
    rpc, offload = _state(request)
    try:
        block_hash = await offload.run(lambda: rpc.block_hash_at(height))
    except RpcNotFound as exc:
        logger.info("block_height_not_found", height=height, error=str(exc))
        return _text(BLOCK_NOT_FOUND, 404)
    except (RpcFailure, OffloadError) as exc:
        return _upstream_failure(exc, "block_hash_at", height=height)
    return _text(str(block_hash))


def collect_fee_estimates(rpc: BitcoinRpcClient) -> Dict[str, float]:
    """Estimate every confirmation target; the first failure aborts."""
    return {str(target): rpc.fee_rate_estimate(target) for target in CONFIRMATION_TARGETS}


async def get_fee_estimates(request: Request) -> Response:
    rpc, offload = _state(request)
    try:
        estimates = await offload.run(lambda: collect_fee_estimates(rpc))
    except (RpcFailure, OffloadError) as exc:
        return _upstream_failure(exc, "fee_estimates")
    return JSONResponse(estimates)


async def get_block_raw(request: Request, hash: str) -> Response:
    try:
        block_hash = BlockHash.parse(hash)
    except InvalidBlockHash as exc:
        logger.info("invalid_block_hash", hash=hash, error=str(exc))
        return _text(INVALID_BLOCK_HASH, 400)

    rpc, offload = _state(request)
    try:
        block_hex = await offload.run(lambda: rpc.raw_block_hex(block_hash))
    except RpcNotFound as exc:
        logger.info("block_hash_not_found", hash=str(block_hash), error=str(exc))
        return _text(BLOCK_NOT_FOUND, 404)
    except (RpcFailure, OffloadError) as exc:
        return _upstream_failure(exc, "raw_block_hex", hash=str(block_hash))
    return _text(block_hex)


def build_route_table() -> RouteTable:
    table = RouteTable()
    table.add(
        "/api/blocks/tip/height",
        "Get the current blockchain tip height.",
        get_tip_height,
    )
    table.add(
        "/api/block-height/{height}",
        "Get the block hash for a specific height.",
        get_block_by_height,
    )
    table.add(
        "/api/fee-estimates",
        "Get fee estimates for different confirmation targets.",
        get_fee_estimates,
    )
    table.add(
        "/api/block/{hash}/raw",
        "Get the raw block data for a specific block hash.",
        get_block_raw,
    )
    return table


INDEX_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <title>Minipool API Documentation</title>
    <style>
        body {{
            font-family: system-ui, -apple-system, sans-serif;
            max-width: 800px;
            margin: 0 auto;
            padding: 2rem;
            line-height: 1.6;
        }}
        h1 {{ color: #2563eb; }}
        .endpoint {{
            background: #f1f5f9;
            padding: 1rem;
            border-radius: 0.5rem;
            margin: 1rem 0;
        }}
        .path {{ font-family: monospace; }}
    </style>
</head>
<body>
    <h1>Minipool API Endpoints</h1>
{endpoints}
</body>
</html>
"""

ENDPOINT_TEMPLATE = """    <div class="endpoint">
        <div class="path">GET {path}</div>
        <p>{description}</p>
    </div>
"""


def render_index(routes: Tuple[RouteInfo, ...]) -> str:
    endpoints = "".join(
        ENDPOINT_TEMPLATE.format(path=html.escape(route.path), description=html.escape(route.description))
        for route in routes
    )
    return INDEX_TEMPLATE.format(endpoints=endpoints)


async def index(request: Request) -> HTMLResponse:
    return HTMLResponse(render_index(request.app.state.routes))


async def redirect_to_index(scope, receive, send) -> None:
    """Router fallback for paths that match no registered route."""
    response = RedirectResponse("/", status_code=307)
    await response(scope, receive, send)
