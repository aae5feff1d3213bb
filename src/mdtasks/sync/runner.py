# src/mdtasks/sync/runner.py

"""
Periodic sync on a background thread.

The runner owns a private asyncio loop on its own thread so interactive
reads/writes never wait for the network. Other threads talk to it through
request_sync() / submit() / stop().
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from ..errors import AuthFailure
from .engine import SyncEngine, SyncResult
from .sync_store import DeadLetter

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_dead_letters(items: list[DeadLetter]) -> None:
    for item in items:
        logger.error(
            "Sync operation dropped: %s %s (task %s): %s",
            item.op.kind.value,
            item.op.path,
            item.op.task_id,
            item.reason,
        )


class SyncBackgroundRunner:
    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval_seconds: float = 300.0,
        on_dead_letters: Callable[[list[DeadLetter]], None] = _log_dead_letters,
        name: str = "mdtasks-sync",
    ) -> None:
        self._engine = engine
        self._interval = max(1.0, float(interval_seconds))
        self._on_dead_letters = on_dead_letters

        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self._ready = threading.Event()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._thread_main, name=name, daemon=True)

        self.last_result: SyncResult | None = None
        self.last_error: BaseException | None = None

    # ---- thread side ----

    def _thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            loop.run_until_complete(self._main())
        finally:
            try:
                loop.run_until_complete(self._close_engine())
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()
                self._loop = None
            logger.info("Background sync stopped")

    async def _main(self) -> None:
        self._wake = asyncio.Event()
        self._ready.set()
        while not self._stop_event.is_set():
            await self.run_once()
            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
            except TimeoutError:
                pass
            self._wake.clear()

    async def _close_engine(self) -> None:
        try:
            await self._engine.aclose()
        except Exception:
            logger.debug("Transport close failed.", exc_info=True)

    async def run_once(self) -> SyncResult | None:
        try:
            self.last_result = await self._engine.sync()
            self.last_error = None
        except AuthFailure as e:
            # Retrying with the same credentials cannot help.
            logger.error("Background sync stopped: credentials rejected (%s)", e)
            self.last_error = e
            self._stop_event.set()
            return None
        except Exception as e:
            logger.exception("Background sync failed")
            self.last_error = e
            return None

        dead = self._engine.take_unreported_dead_letters()
        if dead:
            self._on_dead_letters(dead)
        return self.last_result

    # ---- caller side ----

    def start(self, *, timeout: float = 5.0) -> None:
        self._thread.start()
        if not self._ready.wait(timeout=timeout):
            logger.warning("Background sync loop did not start within %.1fs", timeout)
        logger.info("Background sync started interval=%.0fs", self._interval)

    def request_sync(self) -> None:
        """Run a sync now instead of waiting for the next interval."""
        loop, wake = self._loop, self._wake
        if loop is not None and wake is not None:
            loop.call_soon_threadsafe(wake.set)

    def submit(self, coro: Coroutine[Any, Any, T]) -> concurrent.futures.Future[T]:
        """Run an engine coroutine (e.g. record_local_change) on the sync loop."""
        if self._loop is None:
            coro.close()
            raise RuntimeError("background sync is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def stop(self) -> None:
        self._stop_event.set()
        self._engine.cancel()
        self.request_sync()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()


def start_sync_in_background(engine: SyncEngine, interval_seconds: float = 300.0) -> SyncBackgroundRunner:
    runner = SyncBackgroundRunner(engine, interval_seconds=interval_seconds)
    runner.start()
    return runner
