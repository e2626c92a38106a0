"""iCalendar <-> appointment conversion helpers."""

from __future__ import annotations

import logging
from datetime import datetime

from icalendar import Calendar as VCalendar
from icalendar import Event as VEvent

from calbridge.core.models import AppointmentRecord, RemoteCalendarObject
from calbridge.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

PRODID = "-//calbridge//CalDAV Sync//EN"


def _dt(component, name: str) -> datetime | None:
    value = component.get(name)
    if value is None or not hasattr(value, "dt"):
        return None
    return ensure_utc(value.dt)


def _text(component, name: str) -> str | None:
    value = component.get(name)
    return str(value) if value else None


def parse_vevent(
    ical_data: str | bytes,
    etag: str | None = None,
    href: str | None = None,
) -> RemoteCalendarObject | None:
    """Parse the first VEVENT of an iCalendar document.

    Returns None when the payload has no VEVENT (e.g. a VTODO in a mixed
    collection).
    """
    cal = VCalendar.from_ical(ical_data)
    vevent = None
    for component in cal.walk():
        if component.name == "VEVENT":
            vevent = component
            break

    if vevent is None:
        logger.debug("No VEVENT component found in %s", href or "payload")
        return None

    uid = str(vevent.get("UID", ""))
    if not uid:
        logger.warning("Skipping VEVENT without UID at %s", href)
        return None

    last_modified = _dt(vevent, "LAST-MODIFIED") or _dt(vevent, "DTSTAMP")

    return RemoteCalendarObject(
        uid=uid,
        etag=etag,
        last_modified=last_modified,
        summary=str(vevent.get("SUMMARY", "")),
        description=_text(vevent, "DESCRIPTION"),
        dtstart=_dt(vevent, "DTSTART"),
        dtend=_dt(vevent, "DTEND"),
        location=_text(vevent, "LOCATION"),
        href=href,
    )


def build_vcalendar(obj: RemoteCalendarObject) -> str:
    """Serialize a remote object into a VCALENDAR document with one VEVENT."""
    cal = VCalendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")

    event = VEvent()
    event.add("uid", obj.uid)
    event.add("summary", obj.summary)
    if obj.dtstart:
        event.add("dtstart", obj.dtstart)
    if obj.dtend:
        event.add("dtend", obj.dtend)
    if obj.description:
        event.add("description", obj.description)
    if obj.location:
        event.add("location", obj.location)
    event.add("status", "CONFIRMED")
    event.add("dtstamp", utcnow())
    event.add("last-modified", obj.last_modified or utcnow())
    cal.add_component(event)

    return cal.to_ical().decode("utf-8")


def record_to_remote(record: AppointmentRecord, uid: str | None = None) -> RemoteCalendarObject:
    """Map a local appointment onto iCalendar fields (title -> SUMMARY, ...)."""
    return RemoteCalendarObject(
        uid=uid or record.remote_uid or "",
        etag=record.etag,
        last_modified=record.updated_at,
        summary=record.title,
        description=record.description,
        dtstart=record.start_time,
        dtend=record.end_time,
        location=record.location,
        href=record.remote_href,
    )


def remote_to_record(
    obj: RemoteCalendarObject,
    calendar_id: str,
    existing: AppointmentRecord | None = None,
) -> AppointmentRecord:
    """Map a remote object onto a local appointment, keeping the local id if linked."""
    start = obj.dtstart or (existing.start_time if existing else utcnow())
    end = obj.dtend or (existing.end_time if existing else start)
    return AppointmentRecord(
        id=existing.id if existing else None,
        calendar_id=calendar_id,
        title=obj.summary,
        start_time=start,
        end_time=end,
        description=obj.description,
        location=obj.location,
        remote_uid=obj.uid,
        updated_at=utcnow(),
        etag=obj.etag,
        remote_href=obj.href or (existing.remote_href if existing else None),
    )
