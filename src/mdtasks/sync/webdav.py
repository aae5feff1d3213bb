# src/mdtasks/sync/webdav.py

"""
WebDAV implementation of the Transport port (httpx.AsyncClient).

Only the handful of verbs the sync engine needs: PROPFIND, GET, PUT, DELETE,
MKCOL. Listing walks collections with Depth: 1 (many servers refuse
Depth: infinity). HTTP / network failures are mapped onto the TransportError
hierarchy:

- 401 / 403                     -> AuthFailure
- 404                           -> RemoteNotFound
- other 4xx                     -> RemoteServerError (not retried)
- 5xx                           -> RemoteServerError (transient)
- timeouts / connection errors  -> RemoteConnectionError (transient)
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from urllib.parse import quote, unquote, urlsplit

import httpx

from ..core.ports import RemoteEntry
from ..errors import AuthFailure, RemoteConnectionError, RemoteNotFound, RemoteServerError

logger = logging.getLogger(__name__)

_DAV = "{DAV:}"

_PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:getlastmodified/><d:getetag/><d:getcontentlength/><d:resourcetype/>"
    "</d:prop></d:propfind>"
)


def join_path(base_path: str, relative_path: str) -> str:
    """
    >>> join_path("/remote.php/dav/files/user/Tasks", "/My Tasks/task1.md")
    '/remote.php/dav/files/user/Tasks/My Tasks/task1.md'
    >>> join_path("", "tasks/task1.md")
    '/tasks/task1.md'
    """
    relative_path = relative_path.lstrip("/")
    base = base_path.rstrip("/")
    if not base:
        return f"/{relative_path}"
    if not base.startswith("/"):
        base = "/" + base
    return f"{base}/{relative_path}"


def _parse_http_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        dt = parsedate_to_datetime(raw.strip())
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _raise_for_status(response: httpx.Response, what: str) -> None:
    code = response.status_code
    if code < 400:
        return
    if code in (401, 403):
        raise AuthFailure(f"{what}: HTTP {code}")
    if code == 404:
        raise RemoteNotFound(f"{what}: not found")
    raise RemoteServerError(f"{what}: HTTP {code}", status_code=code)


class WebDavTransport:
    def __init__(
        self,
        base_url: str,
        username: str | None = None,
        password: str | None = None,
        *,
        timeout_seconds: float = 20.0,
        connect_timeout_seconds: float = 5.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        parts = urlsplit(base_url)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"invalid WebDAV URL: {base_url!r}")

        self._origin = f"{parts.scheme}://{parts.netloc}"
        self._base_path = unquote(parts.path).rstrip("/")

        auth = httpx.BasicAuth(username, password or "") if username else None
        self._client = httpx.AsyncClient(
            base_url=self._origin,
            auth=auth,
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            transport=http_transport,
            follow_redirects=True,
        )

    # ---- helpers ----

    def _url(self, relative_path: str) -> str:
        return quote(join_path(self._base_path, relative_path))

    def _relative(self, href: str) -> str:
        path = unquote(urlsplit(href).path)
        if self._base_path and path.startswith(self._base_path):
            path = path[len(self._base_path):]
        return path.strip("/")

    async def _request(self, method: str, relative_path: str, **kwargs) -> httpx.Response:
        what = f"{method} {relative_path or '/'}"
        try:
            response = await self._client.request(method, self._url(relative_path), **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteConnectionError(f"{what}: timed out") from e
        except httpx.TransportError as e:
            raise RemoteConnectionError(f"{what}: {e}") from e
        logger.debug("%s -> %s", what, response.status_code)
        return response

    def _parse_multistatus(self, body: bytes) -> list[RemoteEntry]:
        try:
            root = ET.fromstring(body)
        except ET.ParseError as e:
            raise RemoteServerError(f"malformed PROPFIND response: {e}") from e

        entries: list[RemoteEntry] = []
        for resp in root.iter(f"{_DAV}response"):
            href = resp.findtext(f"{_DAV}href")
            if not href:
                continue
            prop = None
            for propstat in resp.iter(f"{_DAV}propstat"):
                status = propstat.findtext(f"{_DAV}status") or ""
                if " 200 " in status or status.endswith(" 200"):
                    prop = propstat.find(f"{_DAV}prop")
                    break
            if prop is None:
                continue

            resource_type = prop.find(f"{_DAV}resourcetype")
            is_collection = resource_type is not None and resource_type.find(f"{_DAV}collection") is not None
            size_raw = prop.findtext(f"{_DAV}getcontentlength")
            entries.append(
                RemoteEntry(
                    path=self._relative(href),
                    modified=_parse_http_date(prop.findtext(f"{_DAV}getlastmodified")),
                    etag=(prop.findtext(f"{_DAV}getetag") or "").strip() or None,
                    is_collection=is_collection,
                    size=int(size_raw) if size_raw and size_raw.isdigit() else None,
                )
            )
        return entries

    async def _propfind(self, relative_path: str, depth: str) -> list[RemoteEntry]:
        response = await self._request(
            "PROPFIND",
            relative_path,
            content=_PROPFIND_BODY.encode("utf-8"),
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
        )
        _raise_for_status(response, f"PROPFIND {relative_path or '/'}")
        return self._parse_multistatus(response.content)

    # ---- Transport ----

    async def list(self, path: str = "") -> list[RemoteEntry]:
        out: list[RemoteEntry] = []
        pending = [path.strip("/")]
        visited: set[str] = set()
        while pending:
            current = pending.pop()
            if current in visited:
                continue
            visited.add(current)
            for entry in await self._propfind(current, "1"):
                if entry.path == current:
                    continue
                out.append(entry)
                if entry.is_collection:
                    pending.append(entry.path)
        return out

    async def stat(self, path: str) -> RemoteEntry:
        entries = await self._propfind(path, "0")
        if not entries:
            raise RemoteNotFound(f"PROPFIND {path}: empty response")
        return entries[0]

    async def get(self, path: str) -> tuple[bytes, datetime | None]:
        response = await self._request("GET", path)
        _raise_for_status(response, f"GET {path}")
        return response.content, _parse_http_date(response.headers.get("Last-Modified"))

    async def put(self, path: str, data: bytes) -> RemoteEntry | None:
        response = await self._request(
            "PUT",
            path,
            content=data,
            headers={"Content-Type": "text/markdown; charset=utf-8"},
        )
        _raise_for_status(response, f"PUT {path}")
        try:
            return await self.stat(path)
        except RemoteNotFound:
            return None

    async def delete(self, path: str) -> None:
        response = await self._request("DELETE", path)
        _raise_for_status(response, f"DELETE {path}")

    async def make_collection(self, path: str) -> None:
        response = await self._request("MKCOL", path)
        # 405: already exists.
        if response.status_code == 405:
            return
        _raise_for_status(response, f"MKCOL {path}")

    async def aclose(self) -> None:
        await self._client.aclose()


def http_date(dt: datetime) -> str:
    """RFC 1123 date, as servers send in Last-Modified."""
    return format_datetime(dt.astimezone(timezone.utc), usegmt=True)
