"""Calendar integration module.

Mirrors each user's primary Google Calendar into the local store and keeps
both sides in lockstep.

## Components

- `google_calendar`: async wrapper over the Google Calendar API v3
- `reconciler`: incremental (sync token) or full (time window) sync
- `events`: single-event create/update/delete/list

## Sync Modes

1. **Webhook**: Google push notifications trigger an incremental sync
2. **Manual**: the client calls POST /api/calendar/sync

Only the provider client is re-exported here; import the services from
their modules.
"""

from calendar_sync.calendar.google_calendar import (
    CalendarCredentials,
    CalendarEvent,
    EventListing,
    GoogleCalendarClient,
)

__all__ = [
    "CalendarCredentials",
    "CalendarEvent",
    "EventListing",
    "GoogleCalendarClient",
]
