"""
Runs blocking RPC calls on a dedicated, bounded thread pool so the event
loop serving HTTP connections never waits on the daemon.

When every worker is busy, new units queue inside the executor; there is no
admission control and no timeout.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class OffloadError(Exception):
    """The offloaded unit itself did not complete (as opposed to raising)."""


class BlockingOffload:
    def __init__(self, max_workers: int, thread_name_prefix: str = "minipool-rpc"):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix,
        )

    async def run(self, fn: Callable[[], T]) -> T:
        """Execute ``fn`` on the pool and await its result.

        Exceptions raised by ``fn`` propagate unchanged. Failure to schedule
        or complete the unit is raised as OffloadError.
        """
        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(self._executor, fn)
        except RuntimeError as exc:
            raise OffloadError(f"could not schedule blocking call: {exc}") from exc
        try:
            return await future
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            # the pool dropped the unit (shutdown with cancel_futures)
            raise OffloadError("blocking call was cancelled by the worker pool") from None
        except Exception:
            raise
        except BaseException as exc:
            raise OffloadError(f"blocking call aborted: {exc!r}") from exc

    def shutdown(self, wait: bool = True) -> None:
        logger.info("offload_pool_shutdown", workers=self.max_workers)
        self._executor.shutdown(wait=wait, cancel_futures=True)
