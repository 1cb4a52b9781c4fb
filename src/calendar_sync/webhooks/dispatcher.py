"""Background dispatch of webhook notifications.

The webhook endpoint must answer Google immediately, so reconciliation runs
in a background task. The dispatcher owns those tasks:

- each task has its own database session and error boundary
- passes for the same channel run one at a time (asyncio.Lock per channel)
- bursts coalesce: while a pass for a channel is waiting to start, further
  notifications for that channel are dropped, since the waiting incremental
  pass will pick up every change since the stored sync token
- `aclose()` waits for in-flight passes at shutdown
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.database.connection import get_db

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[AsyncSession, str, str | None], Awaitable[bool]]
SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class SyncDispatcher:
    """Runs notification handlers as tracked, serialized background tasks."""

    def __init__(
        self,
        handler: NotificationHandler,
        session_factory: SessionFactory = get_db,
        shutdown_timeout: float = 30.0,
    ):
        self.handler = handler
        self.session_factory = session_factory
        self.shutdown_timeout = shutdown_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._queued: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, channel_id: str, resource_id: str | None) -> asyncio.Task | None:
        """Schedule a sync pass for a channel.

        Returns:
            The spawned task, or None if it was coalesced into a queued pass
            or the dispatcher is shut down
        """
        if self._closed:
            logger.warning(f"Dispatcher closed, dropping notification for {channel_id}")
            return None

        if channel_id in self._queued:
            logger.debug(f"Coalescing notification for channel {channel_id}")
            return None

        self._queued.add(channel_id)
        task = asyncio.create_task(
            self._run(channel_id, resource_id), name=f"webhook-sync-{channel_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, channel_id: str, resource_id: str | None) -> None:
        lock = self._locks.setdefault(channel_id, asyncio.Lock())
        try:
            async with lock:
                self._queued.discard(channel_id)
                async with self.session_factory() as db:
                    await self.handler(db, channel_id, resource_id)
        except asyncio.CancelledError:
            self._queued.discard(channel_id)
            raise
        except Exception:
            logger.exception(f"Webhook processing failed for channel {channel_id}")
        finally:
            if not lock.locked() and channel_id not in self._queued:
                self._locks.pop(channel_id, None)

    async def aclose(self) -> None:
        """Stop accepting notifications and wait for in-flight passes."""
        self._closed = True
        if not self._tasks:
            return

        logger.info(f"Waiting for {len(self._tasks)} webhook sync task(s)")
        done, pending = await asyncio.wait(
            set(self._tasks), timeout=self.shutdown_timeout
        )
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
