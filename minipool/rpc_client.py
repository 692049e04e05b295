"""
Bitcoin Core JSON-RPC client
============================

Blocking client for the handful of daemon calls the gateway needs. One
instance is created at startup and shared by every request; calls are made
from offload worker threads (see ``minipool.offload``), never from the event
loop.

Usage:
    client = BitcoinRpcClient("http://127.0.0.1:8332", "user", "pass")
    height = client.tip_height()
    block_hash = client.block_hash_at(height)
    raw = client.raw_block_hex(block_hash)

Errors:
- RpcNotFound: the daemon does not know the height/hash (codes -5, -8)
- RpcError: any other JSON-RPC error object
- RpcTransportError: connection, read or timeout failure
- RpcProtocolError: the daemon answered with something that is not JSON-RPC
All of them derive from RpcFailure. Nothing is retried.
"""

from __future__ import annotations

import itertools
import re
from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

# Returned when estimatesmartfee has no feerate for the target (BTC/kvB)
FALLBACK_FEE_RATE = 0.0001

RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_INVALID_PARAMETER = -8
NOT_FOUND_CODES = frozenset({RPC_INVALID_ADDRESS_OR_KEY, RPC_INVALID_PARAMETER})

_HASH_RE = re.compile(r"[0-9a-fA-F]{64}")


class InvalidBlockHash(ValueError):
    pass


class BlockHash:
    """A 32-byte block hash in its canonical lowercase hex form."""

    __slots__ = ("_hex",)

    def __init__(self, hex_str: str):
        self._hex = hex_str

    @classmethod
    def parse(cls, text: str) -> "BlockHash":
        if not isinstance(text, str) or not _HASH_RE.fullmatch(text):
            raise InvalidBlockHash(f"not a 64 digit hex block hash: {text!r}")
        return cls(text.lower())

    def __str__(self) -> str:
        return self._hex

    def __repr__(self) -> str:
        return f"BlockHash({self._hex!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, BlockHash) and other._hex == self._hex

    def __hash__(self) -> int:
        return hash(self._hex)


class RpcFailure(Exception):
    pass


class RpcTransportError(RpcFailure):
    pass


class RpcProtocolError(RpcFailure):
    pass


class RpcError(RpcFailure):
    def __init__(self, code: int, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


class RpcNotFound(RpcError):
    pass


class BitcoinRpcClient(httpx.Client):
    """
    Sync JSON-RPC 1.0 client with HTTP basic auth.

    The instance is not mutated after construction, so it can be shared by
    concurrent worker threads; httpx pools the underlying connections.
    """

    def __init__(
        self,
        url: str,
        user: str,
        password: str,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ):
        try:
            rpc_url = httpx.URL(url)
        except httpx.InvalidURL as exc:
            raise ValueError(f"Invalid RPC URL: {url!r}") from exc
        if rpc_url.scheme not in ("http", "https") or not rpc_url.host:
            raise ValueError(f"Invalid RPC URL: {url!r}")
        super().__init__(auth=httpx.BasicAuth(user, password), timeout=timeout, **kwargs)
        self.rpc_url = rpc_url
        self._ids = itertools.count(1)

    def call(self, method: str, *params: Any) -> Any:
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        try:
            response = self.post(self.rpc_url, json=payload)
        except httpx.HTTPError as exc:
            raise RpcTransportError(f"{method}: {exc}") from exc

        if response.status_code in (401, 403):
            raise RpcProtocolError(f"{method}: authentication rejected by daemon")
        try:
            body = response.json()
        except ValueError as exc:
            raise RpcProtocolError(
                f"{method}: non-JSON response (HTTP {response.status_code})"
            ) from exc
        if not isinstance(body, dict) or ("result" not in body and "error" not in body):
            raise RpcProtocolError(f"{method}: malformed JSON-RPC response")

        error = body.get("error")
        if error:
            code, message = self._error_fields(method, error)
            if code in NOT_FOUND_CODES:
                raise RpcNotFound(code, message)
            raise RpcError(code, message)
        return body.get("result")

    @staticmethod
    def _error_fields(method: str, error: Any) -> tuple[int, str]:
        if not isinstance(error, dict):
            return 0, str(error)
        code = error.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            raise RpcProtocolError(f"{method}: error object without an integer code: {error!r}")
        message = error.get("message")
        return code, message if isinstance(message, str) else ""

    def tip_height(self) -> int:
        result = self.call("getblockcount")
        if not isinstance(result, int) or isinstance(result, bool):
            raise RpcProtocolError(f"getblockcount: unexpected result {result!r}")
        return result

    def block_hash_at(self, height: int) -> BlockHash:
        result = self.call("getblockhash", height)
        try:
            return BlockHash.parse(result)
        except InvalidBlockHash as exc:
            raise RpcProtocolError(f"getblockhash: {exc}") from exc

    def fee_rate_estimate(self, confirmation_target: int) -> float:
        estimate = self.call("estimatesmartfee", confirmation_target)
        if not isinstance(estimate, dict):
            raise RpcProtocolError("estimatesmartfee: result is not an object")
        fee_rate = estimate.get("feerate")
        if fee_rate is None:
            logger.warning(
                "fee_estimate_unavailable",
                target=confirmation_target,
                fallback=FALLBACK_FEE_RATE,
                errors=estimate.get("errors"),
            )
            return FALLBACK_FEE_RATE
        if not isinstance(fee_rate, (int, float)) or fee_rate < 0:
            raise RpcProtocolError(f"estimatesmartfee: unexpected feerate {fee_rate!r}")
        return float(fee_rate)

    def raw_block_hex(self, block_hash: BlockHash) -> str:
        result = self.call("getblock", str(block_hash), 0)
        if not isinstance(result, str):
            raise RpcProtocolError("getblock: expected a hex string")
        return result
