"""Routing between the toolbar app and the user's dev server.

The bridge sits in front of the user's dev server. Requests for the
toolbar itself are served locally; everything else is forwarded to
``http://localhost:<app_port>``. The decision per request:

1. paths under PROXY_PREFIX (iframe navigation) are always forwarded;
2. toolbar asset paths are never forwarded;
3. with a Sec-Fetch-Dest header, only ``document`` navigations stay
   local;
4. without it (some remote setups strip the header), requests whose
   Accept starts with ``text/html`` stay local and the rest is
   forwarded.
"""
from __future__ import annotations

import html
import logging
import re
from collections.abc import Mapping

import aiohttp
from aiohttp import web

logger = logging.getLogger(__name__)

PROXY_PREFIX = "/__toolbridge_proxy__"
TOOLBAR_PREFIX = "/toolbridge-toolbar-app"

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

_COOKIE_DOMAIN_RE = re.compile(r";\s*domain=[^;]*", re.IGNORECASE)


def should_proxy(path: str, headers: Mapping[str, str]) -> bool:
    """True if the request belongs to the user's dev server."""
    if path.startswith(PROXY_PREFIX):
        logger.debug("Proxying (prefixed): %s", path)
        return True

    if path.startswith(TOOLBAR_PREFIX):
        return False

    sec_fetch_dest = headers.get("Sec-Fetch-Dest")
    if sec_fetch_dest is not None:
        if sec_fetch_dest == "document":
            logger.debug("Not proxying %s - document navigation", path)
            return False
        logger.debug("Proxying request: %s", path)
        return True

    accept = headers.get("Accept") or ""
    if accept.startswith("text/html"):
        logger.debug("Not proxying %s - html accept without prefix, serving toolbar", path)
        return False

    logger.debug("Proxying request (no sec-fetch-dest): %s", path)
    return True


def strip_proxy_prefix(path: str) -> str:
    if path.startswith(PROXY_PREFIX):
        return path[len(PROXY_PREFIX):] or "/"
    return path


def strip_cookie_domain(set_cookie: str) -> str:
    return _COOKIE_DOMAIN_RE.sub("", set_cookie)


def error_page(app_port: int) -> str:
    port = html.escape(str(app_port))
    return (
        "<!DOCTYPE html>\n"
        "<html><head><meta charset=\"utf-8\"><title>Dev server unreachable</title></head>\n"
        "<body style=\"font-family: sans-serif; padding: 2rem\">\n"
        "<h1>Dev server unreachable</h1>\n"
        f"<p>Could not connect to your app on port <code>{port}</code>.</p>\n"
        "<p>Start your dev server and reload this page.</p>\n"
        "</body></html>\n"
    )


class DevServerProxy:
    """Forwards requests to the dev server with aiohttp's client."""

    def __init__(self, app_port: int, session: aiohttp.ClientSession | None = None) -> None:
        self._app_port = app_port
        self._session = session
        self._owns_session = session is None

    @property
    def app_port(self) -> int:
        return self._app_port

    @property
    def target(self) -> str:
        return f"http://localhost:{self._app_port}"

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                auto_decompress=False,
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=10),
            )
            self._owns_session = True
        return self._session

    def _request_headers(self, request: web.Request) -> dict[str, str]:
        headers = {
            k: v for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "host"
        }
        headers["Host"] = f"localhost:{self._app_port}"
        if request.remote:
            prior = request.headers.get("X-Forwarded-For")
            headers["X-Forwarded-For"] = f"{prior}, {request.remote}" if prior else request.remote
        headers["X-Forwarded-Host"] = request.host
        headers["X-Forwarded-Proto"] = request.scheme
        return headers

    async def forward(self, request: web.Request) -> web.StreamResponse:
        path = strip_proxy_prefix(request.rel_url.path)
        url = self.target + path
        if request.rel_url.query_string:
            url += "?" + request.rel_url.query_string
        body = await request.read() if request.can_read_body else None
        response: web.StreamResponse | None = None

        try:
            async with self._client().request(
                request.method,
                url,
                headers=self._request_headers(request),
                data=body,
                allow_redirects=False,
            ) as upstream:
                response = web.StreamResponse(status=upstream.status, reason=upstream.reason)
                for key, value in upstream.headers.items():
                    lower = key.lower()
                    if lower in HOP_BY_HOP_HEADERS:
                        continue
                    if lower == "set-cookie":
                        value = strip_cookie_domain(value)
                    response.headers.add(key, value)
                await response.prepare(request)
                async for chunk in upstream.content.iter_chunked(64 * 1024):
                    await response.write(chunk)
                await response.write_eof()
                return response
        except aiohttp.ClientError as exc:
            logger.error("Proxy error: %s", exc)
            if response is not None and response.prepared:
                # Headers already sent; the client sees a truncated body.
                return response
            return web.Response(
                status=503,
                text=error_page(self._app_port),
                content_type="text/html",
            )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
