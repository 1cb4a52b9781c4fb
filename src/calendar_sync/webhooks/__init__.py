"""Google Calendar push notifications.

- `channels`: create/renew/stop channels and route notifications to a sync
- `dispatcher`: run notification handling in background tasks
- `scheduler`: renew channels before they expire
"""

from calendar_sync.webhooks.channels import (
    WebhookChannelManager,
    build_channel_manager,
    handle_webhook_notification,
    is_change_notification,
)
from calendar_sync.webhooks.dispatcher import SyncDispatcher
from calendar_sync.webhooks.scheduler import WebhookRenewalScheduler

__all__ = [
    "WebhookChannelManager",
    "build_channel_manager",
    "handle_webhook_notification",
    "is_change_notification",
    "SyncDispatcher",
    "WebhookRenewalScheduler",
]
