"""Periodic renewal of expiring push notification channels.

Google channels expire (typically after about a week). A single background
task, started with the application, wakes every
WEBHOOK_RENEWAL_INTERVAL_SECONDS (default: hourly) and renews every channel
expiring within WEBHOOK_RENEWAL_LOOKAHEAD_HOURS (default: 24).

Renewals in a pass run one after another, each in its own database
session, so one user's failure never blocks the others.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.config import get_settings
from calendar_sync.database.connection import get_db
from calendar_sync.database.models import User
from calendar_sync.webhooks.channels import WebhookChannelManager, build_channel_manager
from calendar_sync.webhooks.dispatcher import SessionFactory

logger = logging.getLogger(__name__)

ManagerFactory = Callable[[AsyncSession], WebhookChannelManager]


class WebhookRenewalScheduler:
    """Background task renewing channels before they expire.

    Example:
        ```python
        scheduler = WebhookRenewalScheduler()
        scheduler.start()
        ...
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        manager_factory: ManagerFactory = build_channel_manager,
        session_factory: SessionFactory = get_db,
        interval: timedelta | None = None,
        lookahead: timedelta | None = None,
    ):
        settings = get_settings()

        self.manager_factory = manager_factory
        self.session_factory = session_factory
        self.interval = interval or timedelta(
            seconds=settings.webhook_renewal_interval_seconds
        )
        self.lookahead = lookahead or timedelta(
            hours=settings.webhook_renewal_lookahead_hours
        )
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        logger.info(
            f"Starting webhook renewal every {self.interval}, "
            f"renewing channels expiring within {self.lookahead}"
        )
        self._task = asyncio.create_task(self._loop(), name="webhook-renewal")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Webhook renewal stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                await self.run_once()
            except Exception:
                logger.exception("Webhook renewal check failed")

    async def find_expiring(self, now: datetime | None = None) -> list[uuid.UUID]:
        """Ids of users whose channel expires within the lookahead window."""
        cutoff = (now or datetime.now(timezone.utc)) + self.lookahead

        async with self.session_factory() as db:
            result = await db.execute(
                select(User.id).where(
                    User.webhook_channel_id.is_not(None),
                    User.webhook_expiration < cutoff,
                )
            )
            return list(result.scalars().all())

    async def run_once(self, now: datetime | None = None) -> int:
        """Renew all channels nearing expiry.

        Returns:
            Number of channels renewed successfully
        """
        user_ids = await self.find_expiring(now)
        if not user_ids:
            return 0

        renewed = 0
        for user_id in user_ids:
            logger.info(f"Renewing webhook for user {user_id}")
            try:
                async with self.session_factory() as db:
                    user = await self.manager_factory(db).renew_channel(user_id)
            except Exception:
                logger.exception(f"Webhook renewal failed for user {user_id}")
                continue
            if user is not None:
                renewed += 1

        logger.info(f"Renewed {renewed}/{len(user_ids)} webhook channel(s)")
        return renewed
