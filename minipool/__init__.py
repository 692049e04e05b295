"""Minipool: REST gateway in front of a Bitcoin Core JSON-RPC daemon."""

__version__ = "0.1.0"
