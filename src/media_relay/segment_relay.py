import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

import aiohttp
from aiohttp import web
from multidict import CIMultiDict, CIMultiDictProxy

from .errors import ProcessingError, RelayError, RelayTimeoutError, UpstreamError
from .playlist_rewriter import rewrite_playlist
from .url_resolver import is_absolute_http_url, origin_of, unwrap_nested_relay
from .utilities import format_bytes, merge_headers

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"

PLAYLIST_TIMEOUT = 8
SEGMENT_TIMEOUT = 10
SUBTITLE_TIMEOUT = 8
CHUNK_SIZE = 64 * 1024
KEEPALIVE_TIMEOUT = 60

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/mp2t"
SUBTITLE_CONTENT_TYPE = "text/vtt"

FORWARDED_SEGMENT_HEADERS = ("Content-Length", "Content-Range", "Accept-Ranges")


@dataclass(frozen=True)
class RelayCodes:
    label: str
    prefix: str

    @property
    def fetch_error(self):
        return f"{self.prefix}_FETCH_ERROR"

    @property
    def timeout(self):
        return f"{self.prefix}_TIMEOUT"

    @property
    def processing_error(self):
        return f"{self.prefix}_PROCESSING_ERROR"

PLAYLIST_CODES = RelayCodes("M3U8", "M3U8")
SEGMENT_CODES = RelayCodes("TS", "TS")
SUBTITLE_CODES = RelayCodes("Subtitle", "SUB")


@dataclass(frozen=True)
class ProxyRequest:
    target_url: str
    headers: CIMultiDictProxy
    range: Optional[str] = None

    @classmethod
    def build(cls, target_url, headers=None, range=None):
        return cls(target_url, CIMultiDictProxy(CIMultiDict(headers or {})), range or None)


@dataclass(frozen=True)
class RelayContext:
    server_url: str
    origin_header_defaults: Mapping[str, str]

    @classmethod
    def for_target(cls, server_url, target_url):
        origin = origin_of(target_url)
        defaults = {"Referer": origin, "Origin": origin} if origin else {}
        return cls(server_url, defaults)

    def apply_defaults(self, headers):
        """Fill Referer/Origin unless the caller already gave absolute http(s) URLs."""
        merged = CIMultiDict(headers)
        for name, value in self.origin_header_defaults.items():
            if not is_absolute_http_url(merged.get(name)):
                merged[name] = value
        return merged


def server_url_for(request):
    scheme = request.headers.get("X-Forwarded-Proto", "").split(",")[0].strip() or request.scheme
    return f"{scheme}://{request.host}"

def error_response(err):
    return web.json_response(err.to_payload(), status=err.status)

def is_timeout(err):
    return isinstance(err, asyncio.TimeoutError) or "timeout" in str(err).lower()


class RelayClient:
    """
    Fetches origin resources for the relay endpoints.

    Owns two long-lived keep-alive sessions, one for plain http and one for
    https origins, shared by every relay operation.
    """

    def __init__(self, proxy_logger, user_agent=DEFAULT_USER_AGENT,
                 playlist_timeout=PLAYLIST_TIMEOUT, segment_timeout=SEGMENT_TIMEOUT,
                 subtitle_timeout=SUBTITLE_TIMEOUT, chunk_size=CHUNK_SIZE):
        self.log = proxy_logger
        self.user_agent = user_agent
        self.playlist_timeout = playlist_timeout
        self.segment_timeout = segment_timeout
        self.subtitle_timeout = subtitle_timeout
        self.chunk_size = chunk_size
        self._sessions = {}

    def _new_session(self):
        connector = aiohttp.TCPConnector(
            limit=0,
            keepalive_timeout=KEEPALIVE_TIMEOUT,
            enable_cleanup_closed=True,
        )
        return aiohttp.ClientSession(connector=connector)

    def session_for(self, url):
        transport = "https" if url.lower().startswith("https:") else "http"
        session = self._sessions.get(transport)
        if session is None or session.closed:
            logger.info(f"opening {transport} connection pool")
            session = self._new_session()
            self._sessions[transport] = session
        return session

    async def start(self):
        self.session_for("http:")
        self.session_for("https:")

    async def close(self):
        for transport, session in list(self._sessions.items()):
            if not session.closed:
                logger.info(f"closing {transport} connection pool")
                await session.close()
        self._sessions.clear()

    async def relay_playlist(self, proxy_request, context, codes=PLAYLIST_CODES):
        """Fetch a playlist, rewrite it through the relay and return the full response."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        target = proxy_request.target_url

        self.log.debug(
            f"Starting {codes.label} proxy request",
            targetUrl=target,
            headerNames=list(proxy_request.headers.keys()),
            serverUrl=context.server_url,
        )

        headers = merge_headers({"User-Agent": self.user_agent, "Accept": "*/*"}, proxy_request.headers)
        timeout = aiohttp.ClientTimeout(total=self.playlist_timeout)

        try:
            async with self.session_for(target).get(target, headers=headers, timeout=timeout) as upstream:
                if not 200 <= upstream.status < 300:
                    self.log.error(
                        f"{codes.label} fetch failed",
                        targetUrl=target,
                        statusCode=upstream.status,
                        statusText=upstream.reason,
                        responseTime=int((loop.time() - started) * 1000),
                    )
                    return error_response(UpstreamError(
                        f"{codes.label} fetch failed: {upstream.status} {upstream.reason}",
                        status=upstream.status,
                        code=codes.fetch_error,
                        target_url=target,
                    ))

                source_url = str(upstream.url) if upstream.history else target
                body = await upstream.text(errors="replace")

            self.log.debug(
                f"{codes.label} content fetched successfully",
                targetUrl=target,
                contentLength=len(body),
                responseTime=int((loop.time() - started) * 1000),
            )

            rewritten = rewrite_playlist(body, source_url, context.server_url)
            payload = rewritten.encode("utf-8")

            self.log.info(
                f"{codes.label} proxy request completed successfully",
                targetUrl=target,
                responseTime=int((loop.time() - started) * 1000),
                contentLength=len(payload),
            )
            return web.Response(
                body=payload,
                headers={
                    "Content-Type": PLAYLIST_CONTENT_TYPE,
                    "Content-Length": str(len(payload)),
                    "Cache-Control": "no-cache",
                },
            )

        except asyncio.CancelledError:
            raise
        except Exception as err:
            self.log.error(
                f"{codes.label} proxy processing error",
                err,
                targetUrl=target,
                headerNames=list(proxy_request.headers.keys()),
                serverUrl=context.server_url,
                responseTime=int((loop.time() - started) * 1000),
            )
            return error_response(self._classify(err, codes, target))

    async def relay_segment(self, request, proxy_request, codes=SEGMENT_CODES):
        """
        Stream a segment (or key, or direct video) to the client without
        buffering it. Range requests are forwarded and a 206 from the origin
        stays a 206.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        target = unwrap_nested_relay(proxy_request.target_url)

        self.log.debug(
            f"Starting {codes.label} proxy request",
            targetUrl=target,
            headerNames=list(proxy_request.headers.keys()),
            range=proxy_request.range,
        )

        headers = merge_headers(
            {"User-Agent": self.user_agent, "Accept-Encoding": "identity;q=1, *;q=0"},
            proxy_request.headers,
        )
        if proxy_request.range:
            headers["Range"] = proxy_request.range
            self.log.debug("Forwarding range header", range=proxy_request.range, targetUrl=target)

        # the deadline covers the wait for response headers, each body read gets the same budget
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.segment_timeout, sock_read=self.segment_timeout)
        upstream = None
        response = None

        try:
            upstream = await asyncio.wait_for(self._open(target, headers, timeout), self.segment_timeout)

            if not 200 <= upstream.status < 300:
                self.log.error(
                    f"{codes.label} fetch failed",
                    targetUrl=target,
                    statusCode=upstream.status,
                    statusText=upstream.reason,
                    responseTime=int((loop.time() - started) * 1000),
                    range=proxy_request.range,
                )
                return error_response(UpstreamError(
                    f"{codes.label} fetch failed: {upstream.status} {upstream.reason}",
                    status=upstream.status,
                    code=codes.fetch_error,
                    target_url=target,
                ))

            content_type = upstream.headers.get("Content-Type") or SEGMENT_CONTENT_TYPE
            response = web.StreamResponse(status=206 if upstream.status == 206 else 200)
            response.headers["Content-Type"] = content_type
            response.headers["Cache-Control"] = "public, max-age=60"
            for name in FORWARDED_SEGMENT_HEADERS:
                value = upstream.headers.get(name)
                if value is None:
                    continue
                if name == "Content-Length" and "Content-Encoding" in upstream.headers:
                    # the body is decoded on the way through, the origin length no longer applies
                    continue
                response.headers[name] = value

            self.log.debug(
                f"{codes.label} proxy returning {response.status}",
                targetUrl=target,
                contentRange=upstream.headers.get("Content-Range"),
                contentLength=upstream.headers.get("Content-Length"),
            )

            await response.prepare(request)
            sent, finished = await self._pipe(upstream, response, target, codes)
            if not finished:
                self.log.info(
                    f"{codes.label} proxy request ended by client disconnect",
                    targetUrl=target,
                    statusCode=upstream.status,
                    bytesSent=sent,
                    responseTime=int((loop.time() - started) * 1000),
                )
                return response

            self.log.info(
                f"{codes.label} proxy request completed successfully",
                targetUrl=target,
                statusCode=upstream.status,
                contentType=content_type,
                bytesSent=sent,
                responseTime=int((loop.time() - started) * 1000),
            )
            logger.debug(f"relayed {format_bytes(sent)} from {target}")
            return response

        except asyncio.CancelledError:
            if upstream is not None:
                upstream.close()
            raise
        except Exception as err:
            self.log.error(
                f"{codes.label} proxy processing error",
                err,
                targetUrl=target,
                headerNames=list(proxy_request.headers.keys()),
                range=proxy_request.range,
                responseTime=int((loop.time() - started) * 1000),
            )
            if response is not None and response.prepared:
                # headers are out, the only thing left to do is drop the connection
                response.force_close()
                return response
            return error_response(self._classify(err, codes, target))
        finally:
            if upstream is not None:
                upstream.release()

    async def _open(self, target, headers, timeout):
        return await self.session_for(target).get(target, headers=headers, timeout=timeout)

    async def _pipe(self, upstream, response, target, codes):
        """Copy the origin body downstream. Returns (bytes sent, whether the copy finished)."""
        sent = 0
        try:
            async for chunk in upstream.content.iter_chunked(self.chunk_size):
                await response.write(chunk)
                sent += len(chunk)
            await response.write_eof()
        except ConnectionResetError as err:
            # client went away, stop reading so the origin connection is dropped too
            self.log.debug(f"Client disconnected during {codes.label} stream", targetUrl=target, bytesSent=sent, reason=str(err))
            upstream.close()
            response.force_close()
            return sent, False
        return sent, True

    async def relay_subtitle(self, request, proxy_request):
        """Stream a subtitle file. Errors are reported as plain text."""
        target = proxy_request.target_url
        headers = merge_headers({"User-Agent": self.user_agent}, proxy_request.headers)
        timeout = aiohttp.ClientTimeout(total=self.subtitle_timeout)
        response = None

        try:
            async with self.session_for(target).get(target, headers=headers, timeout=timeout) as upstream:
                if not 200 <= upstream.status < 300:
                    self.log.warn("Subtitle fetch failed", targetUrl=target, statusCode=upstream.status)
                    return web.Response(status=upstream.status, text=f"Subtitle fetch failed: {upstream.status}")

                response = web.StreamResponse(status=200)
                response.headers["Content-Type"] = upstream.headers.get("Content-Type") or SUBTITLE_CONTENT_TYPE
                response.headers["Cache-Control"] = "public, max-age=3600"
                await response.prepare(request)
                await self._pipe(upstream, response, target, SUBTITLE_CODES)
            return response

        except asyncio.CancelledError:
            raise
        except Exception as err:
            self.log.error("Subtitle proxy error", err, targetUrl=target)
            if response is not None and response.prepared:
                response.force_close()
                return response
            if is_timeout(err):
                return web.Response(status=408, text="Subtitle Proxy timeout")
            return web.Response(status=500, text=f"Subtitle Proxy error: {err}")

    def _classify(self, err, codes, target):
        if isinstance(err, RelayError):
            return err
        if is_timeout(err):
            return RelayTimeoutError(f"{codes.label} proxy timeout", code=codes.timeout, target_url=target, detail=str(err))
        return ProcessingError(f"{codes.label} proxy processing error", code=codes.processing_error, target_url=target, detail=str(err))
