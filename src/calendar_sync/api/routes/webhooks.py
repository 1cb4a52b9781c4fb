"""Google Calendar push notification endpoint.

Google expects a fast 2xx for every delivery and retries otherwise, so the
endpoint only validates headers and hands change notifications to the
application's `SyncDispatcher`. Once headers are valid the answer is
always 200 `OK`, whatever happens downstream.

## Headers

- X-Goog-Channel-ID: our channel id (required)
- X-Goog-Resource-ID: Google's resource id (required)
- X-Goog-Resource-State: `sync` right after channel creation, `exists` on change
- X-Goog-Channel-Token: the user id given at watch time (optional)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from calendar_sync.api.rate_limit import WEBHOOK, rate_limit
from calendar_sync.webhooks.channels import is_change_notification
from calendar_sync.webhooks.dispatcher import SyncDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(rate_limit(WEBHOOK))])


@dataclass
class WebhookNotification:
    channel_id: str
    resource_id: str
    resource_state: str | None


async def verify_webhook_headers(
    x_goog_channel_id: str | None = Header(default=None),
    x_goog_resource_id: str | None = Header(default=None),
    x_goog_resource_state: str | None = Header(default=None),
    x_goog_channel_token: str | None = Header(default=None),
) -> WebhookNotification:
    """Validate Google's notification headers.

    Raises 400 when the channel or resource id is missing, or when a channel
    token is present but is not a user id.
    """
    if not x_goog_channel_id or not x_goog_resource_id:
        logger.warning("Webhook without channel or resource id")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing webhook headers",
        )

    if x_goog_channel_token:
        try:
            uuid.UUID(x_goog_channel_token)
        except ValueError:
            logger.warning(f"Webhook with invalid channel token for {x_goog_channel_id}")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid channel token",
            ) from None

    return WebhookNotification(
        channel_id=x_goog_channel_id,
        resource_id=x_goog_resource_id,
        resource_state=x_goog_resource_state,
    )


@router.post("/calendar", response_class=PlainTextResponse)
async def calendar_webhook(
    request: Request,
    notification: WebhookNotification = Depends(verify_webhook_headers),
) -> str:
    """Acknowledge a notification and schedule a sync for change events."""
    logger.info(
        f"Webhook received: channel={notification.channel_id} "
        f"resource={notification.resource_id} state={notification.resource_state}"
    )

    if is_change_notification(notification.resource_state):
        dispatcher: SyncDispatcher = request.app.state.dispatcher
        try:
            dispatcher.dispatch(notification.channel_id, notification.resource_id)
        except Exception:
            logger.exception(
                f"Failed to schedule sync for channel {notification.channel_id}"
            )

    return "OK"
