import logging
import threading
from typing import Callable, Dict, Optional

import pytest
import structlog
from fastapi.testclient import TestClient
from structlog.contextvars import clear_contextvars

from minipool.metrics import HttpMetrics
from minipool.offload import BlockingOffload
from minipool.rpc_client import BlockHash, RpcNotFound
from minipool.server import create_app
from minipool.settings import MinipoolSettings

GENESIS_HASH = "000000000019d6689c085ae165831e934ff763ae46a2a6c172b3f1b60a8ce26f"
GENESIS_HEX = "0100000000000000000000000000000000000000000000000000000000000000"


class FakeRpc:
    """In-memory stand-in for BitcoinRpcClient with a two-block chain."""

    def __init__(self) -> None:
        self.chain = {0: GENESIS_HASH, 1: "00000000839a8e6886ab5951d76f411475428afc90947ee320161bbf18eb6048"}
        self.blocks = {GENESIS_HASH: GENESIS_HEX, self.chain[1]: "01000000" + "ab" * 40}
        self.fee_rates: Dict[int, float] = {}
        self.failures: Dict[str, Exception] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}
        self.calls = []
        self.threads = set()
        self.closed = False
        self._lock = threading.Lock()

    def _record(self, name: str, *args) -> None:
        with self._lock:
            self.calls.append((name,) + args)
            self.threads.add(threading.current_thread().name)
        hook = self.hooks.get(name)
        if hook is not None:
            hook()
        if name in self.failures:
            raise self.failures[name]

    def tip_height(self) -> int:
        self._record("tip_height")
        return max(self.chain)

    def block_hash_at(self, height: int) -> BlockHash:
        self._record("block_hash_at", height)
        if height not in self.chain:
            raise RpcNotFound(-8, "Block height out of range")
        return BlockHash.parse(self.chain[height])

    def fee_rate_estimate(self, confirmation_target: int) -> float:
        self._record("fee_rate_estimate", confirmation_target)
        return self.fee_rates.get(confirmation_target, 0.00001 * (1 + 1.0 / confirmation_target))

    def raw_block_hex(self, block_hash: BlockHash) -> str:
        self._record("raw_block_hex", str(block_hash))
        if str(block_hash) not in self.blocks:
            raise RpcNotFound(-5, "Block not found")
        return self.blocks[str(block_hash)]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> MinipoolSettings:
    return MinipoolSettings(
        bitcoin_rpc_url="http://127.0.0.1:18443",
        bitcoin_rpc_user="user",
        bitcoin_rpc_pass="pass",
        offload_workers=8,
    )


@pytest.fixture
def fake_rpc() -> FakeRpc:
    return FakeRpc()


@pytest.fixture
def http_metrics() -> HttpMetrics:
    return HttpMetrics()


@pytest.fixture
def offload():
    pool = BlockingOffload(8)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def app(settings, fake_rpc, offload, http_metrics):
    return create_app(settings, client=fake_rpc, offload=offload, metrics=http_metrics)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def metric_sample(http_metrics) -> Callable[..., Optional[float]]:
    def _sample(name: str, method: str, path: str, status: int) -> Optional[float]:
        return http_metrics.registry.get_sample_value(
            name, {"method": method, "path": path, "status": str(status)}
        )

    return _sample


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()
    clear_contextvars()
