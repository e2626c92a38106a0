"""CalDAV client wrapper for calendar discovery, listing and conditional writes."""

import asyncio
import logging
import re
from typing import Any
from urllib.parse import quote, unquote

import httpx
import requests
from caldav import DAVClient
from caldav.elements import dav
from caldav.lib import error as caldav_error

from calbridge.core.errors import (
    CalBridgeError,
    ConfigurationError,
    RemoteConflict,
    RemoteTimeout,
    RemoteUnavailable,
    SyncTokenInvalid,
)
from calbridge.core.models import (
    Calendar,
    CalendarAccount,
    ListErr,
    ListOk,
    ListResult,
    RemoteCalendarObject,
)
from calbridge.utils.converters import build_vcalendar, parse_vevent

logger = logging.getLogger(__name__)

ICAL_CONTENT_TYPE = 'text/calendar; charset="utf-8"'

# E-mail domain -> CalDAV root for providers that don't answer well-known lookups
KNOWN_PROVIDERS: dict[str, str] = {
    "gmail.com": "https://apidata.googleusercontent.com/caldav/v2/",
    "googlemail.com": "https://apidata.googleusercontent.com/caldav/v2/",
    "outlook.com": "https://outlook.live.com/owa/calendar",
    "hotmail.com": "https://outlook.live.com/owa/calendar",
    "live.com": "https://outlook.live.com/owa/calendar",
    "icloud.com": "https://caldav.icloud.com/",
    "me.com": "https://caldav.icloud.com/",
    "mac.com": "https://caldav.icloud.com/",
    "yahoo.com": "https://caldav.calendar.yahoo.com/",
}

_STATUS_RE = re.compile(r"\s*([1-5]\d\d)\b")


def _status_of(exc: Exception) -> int | None:
    """HTTP status a caldav error was raised for, read from its ``reason``.

    caldav formats the reason as ``"<status> <phrase>\n\n<body>"``; the URL is
    kept out of it, so digits in collection paths never count.
    """
    match = _STATUS_RE.match(str(getattr(exc, "reason", "") or ""))
    return int(match.group(1)) if match else None


def _uid_from_href(href: str) -> str:
    name = unquote(href.rstrip("/").rsplit("/", 1)[-1])
    return name[:-4] if name.endswith(".ics") else name


async def discover_server_url(email: str, timeout: float = 10.0) -> str | None:
    """
    Guess the CalDAV root for an e-mail address.

    Known providers are resolved from a static table; otherwise common
    well-known locations on the domain are tried with HEAD requests.
    """
    domain = email.split("@")[-1].lower()
    if domain in KNOWN_PROVIDERS:
        return KNOWN_PROVIDERS[domain]

    candidates = [
        f"https://{domain}/.well-known/caldav",
        f"https://caldav.{domain}/",
        f"https://{domain}/caldav/",
        f"https://mail.{domain}/caldav/",
    ]
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        for url in candidates:
            try:
                response = await client.head(url)
            except httpx.HTTPError as e:
                logger.debug(f"CalDAV discovery request failed for {url}: {e}")
                continue
            # 401 still means something CalDAV-ish is listening there
            if response.status_code < 400 or response.status_code == 401:
                logger.info(f"Discovered CalDAV server for {domain}: {url}")
                return url

    logger.warning(f"Could not discover CalDAV server for {email}")
    return None


class RemoteCalendarClient:
    """
    Async facade over the blocking ``caldav`` library.

    Listing calls return a tagged ``ListOk``/``ListErr`` result. Write calls
    raise: ``RemoteConflict`` on a failed precondition (HTTP 412),
    ``RemoteTimeout``/``RemoteUnavailable`` on transport or server trouble.
    """

    def __init__(
        self,
        account: CalendarAccount,
        password: str | None,
        ssl_verify_cert: bool | str = True,
        timeout: int = 30,
    ):
        """
        Args:
            account: Server URL and username
            password: CalDAV password (resolved from keyring or config)
            ssl_verify_cert: SSL verification flag or CA bundle path
            timeout: Per-request timeout in seconds
        """
        self.account = account
        self.password = password
        self.ssl_verify_cert = ssl_verify_cert
        self.timeout = timeout
        self.client: DAVClient | None = None
        self.principal: Any = None

    async def connect(self) -> None:
        """Connect to the CalDAV server and resolve the principal.

        Raises:
            ConfigurationError: Credentials missing, rejected, or server unreachable
        """
        if not self.account.server_url:
            raise ConfigurationError("CalDAV server URL is not configured")
        if not self.account.username or not self.password:
            raise ConfigurationError(
                f"CalDAV credentials missing for account '{self.account.account_id}'"
            )

        def _connect():
            client = DAVClient(
                url=self.account.server_url,
                username=self.account.username,
                password=self.password,
                ssl_verify_cert=self.ssl_verify_cert,
                timeout=self.timeout,
            )
            return client, client.principal()

        logger.debug(f"Connecting to CalDAV server: {self.account.server_url}")
        try:
            self.client, self.principal = await asyncio.to_thread(_connect)
        except caldav_error.AuthorizationError as e:
            raise ConfigurationError(f"CalDAV authentication failed: {e}") from e
        except (requests.exceptions.RequestException, caldav_error.DAVError) as e:
            raise ConfigurationError(
                f"CalDAV server unreachable at {self.account.server_url}: {e}"
            ) from e
        logger.info(f"Connected to CalDAV server: {self.account.server_url}")

    async def _ensure_connected(self) -> None:
        if self.client is None:
            await self.connect()

    async def _call(self, func, *args, **kwargs):
        """Run a blocking caldav call in a worker thread, mapping transport errors."""
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except requests.exceptions.Timeout as e:
            raise RemoteTimeout(f"CalDAV request timed out after {self.timeout}s: {e}") from e
        except requests.exceptions.RequestException as e:
            raise RemoteUnavailable(f"CalDAV request failed: {e}") from e
        except caldav_error.AuthorizationError as e:
            raise RemoteUnavailable(f"CalDAV authorization failed: {e}") from e

    def _collection(self, calendar: Calendar):
        return self.client.calendar(url=calendar.calendar_id)

    def _object_url(self, calendar: Calendar, uid: str) -> str:
        # Same scheme caldav uses when it generates object URLs
        collection = self._collection(calendar)
        return str(collection.url.join(quote(uid.replace("/", "%2F")) + ".ics"))

    def _to_remote(self, obj) -> RemoteCalendarObject | None:
        href = str(obj.url)
        props = getattr(obj, "props", None) or {}
        etag = props.get(dav.GetEtag.tag)
        data = getattr(obj, "data", None)
        if not data:
            # Reported by the server but gone by the time we loaded it
            return RemoteCalendarObject.tombstone(_uid_from_href(href), href=href)
        try:
            return parse_vevent(data, etag=str(etag) if etag else None, href=href)
        except ValueError as e:
            logger.error(f"Failed to parse calendar object {href}: {e}")
            return None

    def _collect(self, raw_objects) -> list[RemoteCalendarObject]:
        result = []
        for raw in raw_objects:
            parsed = self._to_remote(raw)
            if parsed is not None:
                result.append(parsed)
        return result

    async def discover_calendars(self) -> list[dict[str, str]]:
        """
        List event-capable calendars on the server.

        Returns:
            List of dicts with 'name' and 'url' keys
        """
        await self._ensure_connected()
        calendars = await self._call(self.principal.calendars)

        result = []
        for cal in calendars:
            try:
                components = await self._call(cal.get_supported_components)
            except (CalBridgeError, caldav_error.DAVError) as e:
                logger.debug(f"Could not read supported components for {cal.url}: {e}")
                components = None
            if components is None or "VEVENT" in components:
                result.append({"name": cal.name or str(cal.url), "url": str(cal.url)})

        logger.info(f"Found {len(result)} event calendars out of {len(calendars)} total")
        return result

    async def list_full(self, calendar: Calendar) -> ListResult:
        """Fetch every object in the collection along with a fresh sync token."""
        try:
            await self._ensure_connected()
            collection = self._collection(calendar)
            objects = await self._call(collection.objects_by_sync_token, load_objects=True)
        except (RemoteUnavailable, ConfigurationError) as e:
            return ListErr(e)
        except caldav_error.DAVError as e:
            return ListErr(RemoteUnavailable(f"Full listing failed: {e}"))

        token = getattr(objects, "sync_token", None)
        remote = [obj for obj in self._collect(objects) if not obj.deleted]
        logger.info(f"Full listing of {calendar.calendar_id}: {len(remote)} objects")
        return ListOk(objects=remote, sync_token=str(token) if token else None, full_snapshot=True)

    async def list_incremental(self, calendar: Calendar, sync_token: str) -> ListResult:
        """
        Fetch objects changed since ``sync_token`` (sync-collection REPORT).

        A rejected token comes back as ``ListErr(SyncTokenInvalid)``. Objects the
        server lists as removed are returned as tombstones.
        """
        try:
            await self._ensure_connected()
            collection = self._collection(calendar)
            objects = await self._call(
                collection.objects_by_sync_token,
                sync_token=sync_token,
                load_objects=True,
                disable_fallback=True,
            )
        except (RemoteUnavailable, ConfigurationError) as e:
            return ListErr(e)
        except caldav_error.DAVError as e:
            status = _status_of(e)
            if status is not None and status >= 500:
                return ListErr(RemoteUnavailable(f"Incremental listing failed: {e}"))
            return ListErr(SyncTokenInvalid(f"Sync token rejected for {calendar.calendar_id}: {e}"))

        token = str(getattr(objects, "sync_token", None) or "") or None
        # Without server support caldav emulates tokens and returns every object on change
        emulated = bool(token and token.startswith("fake-") and token != sync_token)
        remote = self._collect(objects)
        if emulated:
            remote = [obj for obj in remote if not obj.deleted]
        logger.info(
            f"Incremental listing of {calendar.calendar_id}: {len(remote)} changed objects"
            + (" (emulated, full snapshot)" if emulated else "")
        )
        return ListOk(objects=remote, sync_token=token, full_snapshot=emulated)

    async def fetch_object(self, calendar: Calendar, uid: str) -> RemoteCalendarObject | None:
        """Fetch a single object by UID, or None if the server doesn't have it."""
        await self._ensure_connected()
        collection = self._collection(calendar)

        def _fetch():
            obj = collection.event_by_uid(uid)
            obj.load()  # refreshes the etag from the response headers
            return obj

        try:
            obj = await self._call(_fetch)
        except caldav_error.NotFoundError:
            return None
        parsed = self._to_remote(obj)
        return None if parsed is None or parsed.deleted else parsed

    async def put_object(
        self,
        calendar: Calendar,
        obj: RemoteCalendarObject,
        etag: str | None = None,
        create: bool = False,
    ) -> RemoteCalendarObject:
        """
        Create or update an object.

        Args:
            calendar: Target collection
            obj: Object to write
            etag: Known etag; sent as ``If-Match`` so a concurrent remote edit
                  is not overwritten. ``None`` force-overwrites.
            create: Send ``If-None-Match: *`` (create-only)

        Returns:
            The stored object with its new etag and href

        Raises:
            RemoteConflict: Precondition failed (HTTP 412)
        """
        await self._ensure_connected()
        href = obj.href or self._object_url(calendar, obj.uid)
        body = build_vcalendar(obj)
        headers = {"Content-Type": ICAL_CONTENT_TYPE}
        if create:
            headers["If-None-Match"] = "*"
        elif etag:
            headers["If-Match"] = etag

        response = await self._call(self.client.put, href, body, headers)
        if response.status == 412:
            raise RemoteConflict(obj.uid)
        if response.status >= 500:
            raise RemoteUnavailable(f"PUT {href} failed with HTTP {response.status}")
        if response.status not in (200, 201, 204):
            raise CalBridgeError(f"PUT {href} rejected with HTTP {response.status}")

        new_etag = response.headers.get("ETag") if response.headers else None
        if not new_etag:
            head = await self._call(self.client.request, href, "HEAD")
            new_etag = head.headers.get("ETag") if head.headers else None

        logger.debug(f"Stored {obj.uid} at {href} (etag={new_etag})")
        return RemoteCalendarObject(
            uid=obj.uid,
            etag=new_etag,
            last_modified=obj.last_modified,
            summary=obj.summary,
            description=obj.description,
            dtstart=obj.dtstart,
            dtend=obj.dtend,
            location=obj.location,
            href=href,
        )

    async def delete_object(
        self,
        calendar: Calendar,
        uid: str,
        etag: str | None = None,
        href: str | None = None,
    ) -> None:
        """
        Delete an object; a missing object counts as already deleted.

        Raises:
            RemoteConflict: ``If-Match`` precondition failed (HTTP 412)
        """
        await self._ensure_connected()
        url = href or self._object_url(calendar, uid)
        headers = {"If-Match": etag} if etag else {}

        response = await self._call(self.client.request, url, "DELETE", "", headers)
        if response.status == 412:
            raise RemoteConflict(uid)
        if response.status == 404:
            logger.debug(f"Remote object {uid} already gone")
            return
        if response.status >= 500:
            raise RemoteUnavailable(f"DELETE {url} failed with HTTP {response.status}")
        if response.status not in (200, 204):
            raise CalBridgeError(f"DELETE {url} rejected with HTTP {response.status}")
        logger.debug(f"Deleted remote object {uid}")
