# tests/test_webdav.py

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from mdtasks.errors import AuthFailure, RemoteConnectionError, RemoteNotFound, RemoteServerError
from mdtasks.sync.webdav import WebDavTransport, http_date, join_path

BASE = "https://dav.example.com/remote.php/dav/files/me/Tasks"
ROOT = "/remote.php/dav/files/me/Tasks"
MODIFIED = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _response(
    href: str, *, collection: bool = False, etag: str | None = None, size: int | None = None, modified: bool = True
) -> str:
    rtype = "<d:collection/>" if collection else ""
    extra = f"<d:getlastmodified>{http_date(MODIFIED)}</d:getlastmodified>" if modified else ""
    if etag:
        extra += f"<d:getetag>{etag}</d:getetag>"
    if size is not None:
        extra += f"<d:getcontentlength>{size}</d:getcontentlength>"
    return (
        "<d:response>"
        f"<d:href>{href}</d:href>"
        "<d:propstat><d:prop>"
        f"<d:resourcetype>{rtype}</d:resourcetype>"
        f"{extra}"
        "</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat>"
        "</d:response>"
    )


def _multistatus(*responses: str) -> httpx.Response:
    body = '<?xml version="1.0"?><d:multistatus xmlns:d="DAV:">' + "".join(responses) + "</d:multistatus>"
    return httpx.Response(207, content=body.encode("utf-8"), headers={"Content-Type": "application/xml"})


def _transport(handler) -> WebDavTransport:
    return WebDavTransport(BASE, "me", "secret", http_transport=httpx.MockTransport(handler))


def test_join_path() -> None:
    assert join_path("/base/", "/List/Task.md") == "/base/List/Task.md"
    assert join_path("base", "List/Task.md") == "/base/List/Task.md"
    assert join_path("", "List/Task.md") == "/List/Task.md"


@pytest.mark.asyncio
async def test_list_walks_collections_depth_one() -> None:
    seen: list[tuple[str, str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, request.headers.get("Depth", "")))
        assert request.headers["Authorization"].startswith("Basic ")
        if request.url.path in (ROOT, ROOT + "/"):
            return _multistatus(
                _response(ROOT + "/", collection=True),
                _response(ROOT + "/My%20Tasks/", collection=True),
            )
        if request.url.path == ROOT + "/My Tasks":
            return _multistatus(
                _response(ROOT + "/My%20Tasks/", collection=True),
                _response(ROOT + "/My%20Tasks/Buy%20milk.md", etag='"abc"', size=42),
            )
        return httpx.Response(404)

    dav = _transport(handler)
    try:
        entries = await dav.list()
    finally:
        await dav.aclose()

    by_path = {e.path: e for e in entries}
    assert set(by_path) == {"My Tasks", "My Tasks/Buy milk.md"}
    assert by_path["My Tasks"].is_collection
    task = by_path["My Tasks/Buy milk.md"]
    assert task.modified == MODIFIED
    assert task.etag == '"abc"'
    assert task.size == 42
    assert [m for m, _, _ in seen] == ["PROPFIND", "PROPFIND"]
    assert all(depth == "1" for _, _, depth in seen)


@pytest.mark.asyncio
async def test_get_returns_content_and_last_modified() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == ROOT + "/My Tasks/A.md"
        return httpx.Response(200, content=b"---\n", headers={"Last-Modified": http_date(MODIFIED)})

    dav = _transport(handler)
    try:
        data, modified = await dav.get("My Tasks/A.md")
    finally:
        await dav.aclose()

    assert data == b"---\n"
    assert modified == MODIFIED


@pytest.mark.asyncio
async def test_missing_modification_time_is_reported_as_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, content=b"---\n")
        if request.url.path in (ROOT, ROOT + "/"):
            return _multistatus(_response(ROOT + "/L/", collection=True, modified=False))
        return _multistatus(_response(ROOT + "/L/A.md", etag='"e1"', modified=False))

    dav = _transport(handler)
    try:
        first = {e.path: e for e in await dav.list()}
        second = {e.path: e for e in await dav.list()}
        _, modified = await dav.get("L/A.md")
    finally:
        await dav.aclose()

    assert first["L/A.md"].modified is None
    assert first == second
    assert modified is None


@pytest.mark.asyncio
async def test_put_reports_new_entry() -> None:
    stored: dict[str, bytes] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PUT":
            stored[request.url.path] = request.content
            return httpx.Response(201)
        if request.method == "PROPFIND":
            assert request.headers["Depth"] == "0"
            return _multistatus(_response(ROOT + "/L/A.md", etag='"v2"', size=3))
        return httpx.Response(405)

    dav = _transport(handler)
    try:
        entry = await dav.put("L/A.md", b"abc")
    finally:
        await dav.aclose()

    assert stored == {ROOT + "/L/A.md": b"abc"}
    assert entry is not None
    assert entry.path == "L/A.md"
    assert entry.etag == '"v2"'


@pytest.mark.asyncio
async def test_make_collection_tolerates_existing_folder() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.method)
        return httpx.Response(405)

    dav = _transport(handler)
    try:
        await dav.make_collection("L")
    finally:
        await dav.aclose()
    assert calls == ["MKCOL"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error",
    [
        (401, AuthFailure),
        (403, AuthFailure),
        (404, RemoteNotFound),
        (409, RemoteServerError),
        (503, RemoteServerError),
    ],
)
async def test_http_status_mapping(status: int, error: type[Exception]) -> None:
    dav = _transport(lambda request: httpx.Response(status))
    try:
        with pytest.raises(error) as exc:
            await dav.delete("L/A.md")
    finally:
        await dav.aclose()

    if isinstance(exc.value, RemoteServerError):
        assert exc.value.status_code == status
        assert exc.value.transient is (status >= 500)


@pytest.mark.asyncio
async def test_network_errors_become_connection_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    dav = _transport(handler)
    try:
        with pytest.raises(RemoteConnectionError):
            await dav.get("L/A.md")
    finally:
        await dav.aclose()


@pytest.mark.asyncio
async def test_malformed_propfind_response() -> None:
    dav = _transport(lambda request: httpx.Response(207, content=b"<not-xml"))
    try:
        with pytest.raises(RemoteServerError):
            await dav.list()
    finally:
        await dav.aclose()


def test_invalid_base_url() -> None:
    with pytest.raises(ValueError):
        WebDavTransport("not a url")
