"""Google Calendar sync service.

Mirrors users' primary Google Calendars into a local database, keeps the
mirror current through push notifications and incremental sync, and
exposes event CRUD over HTTP.
"""

__version__ = "0.1.0"
