"""Calendar event routes.

CRUD on the signed-in user's primary calendar plus a manual sync trigger.
Event ids in paths and responses are Google event ids.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_sync.api.rate_limit import API, rate_limit
from calendar_sync.auth.credentials import CredentialManager
from calendar_sync.auth.dependencies import get_current_user
from calendar_sync.calendar.events import EventInput, EventService
from calendar_sync.calendar.reconciler import EventReconciler
from calendar_sync.database.connection import get_db_session
from calendar_sync.database.models import Event, User

router = APIRouter(dependencies=[Depends(rate_limit(API))])


class EventResponse(BaseModel):
    """A calendar event as returned to the frontend."""

    id: str
    title: str
    start: datetime
    end: datetime
    description: str
    location: str
    status: str
    attendees: list[str]

    @classmethod
    def from_event(cls, event: Event) -> EventResponse:
        return cls(
            id=event.google_event_id,
            title=event.title,
            start=event.start,
            end=event.end,
            description=event.description or "",
            location=event.location or "",
            status=event.status,
            attendees=list(event.attendees or []),
        )


def get_event_service(db: AsyncSession = Depends(get_db_session)) -> EventService:
    return EventService(db, CredentialManager(db))


def get_reconciler(db: AsyncSession = Depends(get_db_session)) -> EventReconciler:
    return EventReconciler(db, CredentialManager(db))


@router.get("/events", response_model=list[EventResponse])
async def list_events(
    user: User = Depends(get_current_user),
    service: EventService = Depends(get_event_service),
) -> list[EventResponse]:
    """List the user's events from the local store."""
    events = await service.get_user_events(user)
    return [EventResponse.from_event(e) for e in events]


@router.post(
    "/events",
    response_model=EventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_event(
    body: EventInput,
    user: User = Depends(get_current_user),
    service: EventService = Depends(get_event_service),
) -> EventResponse:
    event = await service.create_event(user, body)
    return EventResponse.from_event(event)


@router.put("/events/{event_id}", response_model=EventResponse)
async def update_event(
    event_id: str,
    body: EventInput,
    user: User = Depends(get_current_user),
    service: EventService = Depends(get_event_service),
) -> EventResponse:
    event = await service.update_event(user, event_id, body)
    return EventResponse.from_event(event)


@router.delete("/events/{event_id}")
async def delete_event(
    event_id: str,
    user: User = Depends(get_current_user),
    service: EventService = Depends(get_event_service),
) -> dict:
    await service.delete_event(user, event_id)
    return {"message": "Event deleted successfully"}


@router.post("/sync", response_model=list[EventResponse])
async def sync_events(
    user: User = Depends(get_current_user),
    reconciler: EventReconciler = Depends(get_reconciler),
) -> list[EventResponse]:
    """Run a sync pass now and return the events it created or updated."""
    events = await reconciler.sync_events(user)
    return [EventResponse.from_event(e) for e in events]
