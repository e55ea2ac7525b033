# conftest.py
import asyncio
import logging

import pytest
from aiohttp import web

from media_relay.config import RelayConfig
from media_relay.proxy_logger import ProxyLogger
from media_relay.segment_cache import SegmentCache
from media_relay.segment_relay import RelayClient
from media_relay.web_server import WebServer

MASTER_PLAYLIST = "\n".join([
    "#EXTM3U",
    '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="English",URI="audio/en.m3u8"',
    '#EXT-X-STREAM-INF:BANDWIDTH=1280000,RESOLUTION=1280x720,AUDIO="aud"',
    "720p/index.m3u8",
])

MEDIA_PLAYLIST = "\n".join([
    "#EXTM3U",
    "#EXT-X-VERSION:3",
    "#EXT-X-TARGETDURATION:10",
    '#EXT-X-KEY:METHOD=AES-128,URI="key.bin",IV=0x1234',
    "#EXTINF:9.97,",
    "seg0.ts",
    "#EXTINF:9.97,",
    "https://cdn.example.com/abs/seg1.ts?token=abc",
    "#EXT-X-ENDLIST",
])

SEGMENT = bytes(range(256)) * 4
LATIN1_PLAYLIST = "\n".join([
    "#EXTM3U",
    '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="Fran\xe7ais",URI="audio/fr.m3u8"',
    "720p/index.m3u8",
]).encode("latin-1")


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Origin:
    """In-process stand-in for a media origin, records what it was asked for."""

    def __init__(self):
        self.requests = []
        self.delay = 0
        self.stall = 1.0
        self.stream_aborted = asyncio.Event()

    async def _record(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

    async def master(self, request):
        await self._record(request)
        return web.Response(text=MASTER_PLAYLIST, content_type="application/vnd.apple.mpegurl")

    async def media(self, request):
        await self._record(request)
        return web.Response(text=MEDIA_PLAYLIST, content_type="application/vnd.apple.mpegurl")

    async def segment(self, request):
        await self._record(request)
        range_header = request.headers.get("Range")
        if range_header:
            start, end = range_header.replace("bytes=", "").split("-")
            start, end = int(start), int(end)
            body = SEGMENT[start:end + 1]
            return web.Response(
                status=206,
                body=body,
                headers={
                    "Content-Range": f"bytes {start}-{end}/{len(SEGMENT)}",
                    "Accept-Ranges": "bytes",
                },
            )
        return web.Response(body=SEGMENT, headers={"Accept-Ranges": "bytes"})

    async def latin1(self, request):
        await self._record(request)
        return web.Response(body=LATIN1_PLAYLIST, headers={"Content-Type": "application/vnd.apple.mpegurl; charset=utf-8"})

    async def stalled(self, request):
        """Sends headers and half the body, then goes quiet."""
        await self._record(request)
        response = web.StreamResponse(headers={"Content-Length": str(len(SEGMENT))})
        await response.prepare(request)
        await response.write(SEGMENT[:len(SEGMENT) // 2])
        await asyncio.sleep(self.stall)
        return response

    async def endless(self, request):
        """Trickles chunks until the reader goes away."""
        await self._record(request)
        response = web.StreamResponse()
        await response.prepare(request)
        try:
            for _ in range(500):
                await response.write(SEGMENT)
                await asyncio.sleep(0.01)
        except (ConnectionResetError, asyncio.CancelledError):
            self.stream_aborted.set()
            raise
        return response

    async def subtitle(self, request):
        await self._record(request)
        return web.Response(text="WEBVTT\n\n00:00.000 --> 00:01.000\nhello\n")

    async def missing(self, request):
        await self._record(request)
        return web.Response(status=404, text="not here")

    def app(self):
        app = web.Application()
        app.router.add_get("/hls/master.m3u8", self.master)
        app.router.add_get("/hls/720p/index.m3u8", self.media)
        app.router.add_get("/hls/720p/seg0.ts", self.segment)
        app.router.add_get("/subs/en.vtt", self.subtitle)
        app.router.add_get("/latin1.m3u8", self.latin1)
        app.router.add_get("/stall.ts", self.stalled)
        app.router.add_get("/endless.ts", self.endless)
        app.router.add_get("/gone.m3u8", self.missing)
        app.router.add_get("/gone.ts", self.missing)
        return app


@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def proxy_logger():
    return ProxyLogger(level="debug", detailed=True, logger=logging.getLogger("tests.proxy"))

@pytest.fixture
def config():
    return RelayConfig(allowed_origins=frozenset({"https://app.example.com"}))

@pytest.fixture
async def origin(aiohttp_server):
    origin = Origin()
    origin.server = await aiohttp_server(origin.app())
    origin.url = lambda path: str(origin.server.make_url(path))
    return origin

@pytest.fixture
def make_relay(aiohttp_client, config, proxy_logger, clock):
    async def factory(providers=None, **relay_kwargs):
        relay = RelayClient(proxy_logger, **relay_kwargs)
        cache = SegmentCache(clock=clock, enabled=config.cache_enabled)
        server = WebServer(config, cache=cache, proxy_logger=proxy_logger, relay=relay, providers=providers)
        client = await aiohttp_client(server.create_app())
        client.web_server = server
        return client
    return factory

@pytest.fixture
async def relay(make_relay):
    return await make_relay()
