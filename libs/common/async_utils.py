"""Async utilities for running coroutines from sync contexts."""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from collections.abc import Coroutine
from typing import Any, TypeVar

_T = TypeVar("_T")


class BackgroundLoop:
    """Event loop running forever in a daemon thread.

    Synchronous callers submit coroutines with run() and block only until that
    coroutine finishes. Unlike asyncio.run(), returning never tears the loop
    down, so tasks the coroutine leaves behind (e.g. a shared fetch still in
    flight after a deadline) keep running and can complete later.

    Usable from threads with or without their own running event loop; it
    must not be called from the background thread itself.

    Example:
        >>> bridge = BackgroundLoop(name="config-loader")
        >>> bridge.run(fetch_config(), timeout=5.0)
        >>> bridge.close()
    """

    def __init__(self, name: str = "async-bridge") -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_forever, name=name, daemon=True)
        self._thread.start()

    def _run_forever(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    @property
    def closed(self) -> bool:
        return self._loop.is_closed()

    def run(self, coro: Coroutine[Any, Any, _T], timeout: float | None = None) -> _T:
        """Run ``coro`` on the background loop and wait for its result.

        Args:
            coro: The coroutine to execute.
            timeout: Maximum time to wait (seconds). None waits for the
                coroutine to finish on its own.

        Returns:
            The result of the coroutine.

        Raises:
            concurrent.futures.TimeoutError: If execution exceeds timeout
                (the coroutine is cancelled).
            RuntimeError: If the loop has been closed.
        """
        if self.closed:
            coro.close()
            raise RuntimeError("background loop is closed")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def close(self, timeout: float = 5.0) -> None:
        """Cancel outstanding tasks, stop the loop and join its thread. Idempotent."""
        if self.closed:
            return
        cancelled = asyncio.run_coroutine_threadsafe(_cancel_pending(), self._loop)
        try:
            cancelled.result(timeout=timeout)
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout)
            if not self._thread.is_alive():
                self._loop.close()


async def _cancel_pending() -> None:
    current = asyncio.current_task()
    tasks = [task for task in asyncio.all_tasks() if task is not current]
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["BackgroundLoop"]
