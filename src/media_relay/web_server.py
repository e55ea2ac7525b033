import asyncio
import logging

from aiohttp import web

from .config import RelayConfig
from .cors import CorsGuard
from .errors import ProcessingError, ProviderError, ValidationError
from .providers import WATCH_CACHE_TTL, ProviderRegistry
from .proxy_logger import ProxyLogger
from .response_rewriter import process_api_response
from .segment_cache import SegmentCache
from .segment_relay import (
    ProxyRequest,
    RelayClient,
    RelayContext,
    error_response,
    server_url_for,
)
from .url_resolver import is_absolute_http_url, normalize_target
from .utilities import iso_timestamp, parse_headers_param

logger = logging.getLogger(__name__)

PROCESSING_CODES = {
    "/m3u8-proxy": "M3U8_PROCESSING_ERROR",
    "/proxy/hls": "M3U8_PROCESSING_ERROR",
    "/ts-proxy": "TS_PROCESSING_ERROR",
}


class WebServer:
    def __init__(self, config=None, cache=None, proxy_logger=None, relay=None, providers=None):

        self.config = config or RelayConfig.from_env()
        self.host = self.config.host
        self.port = self.config.port

        self.log = proxy_logger or ProxyLogger.from_config(self.config)
        self.cache = cache or SegmentCache(enabled=self.config.cache_enabled)
        self.relay = relay or RelayClient(self.log)
        self.cors = CorsGuard(self.config.allowed_origins)
        self.providers = providers or ProviderRegistry()

    def create_app(self):
        app = web.Application(middlewares=[self.cors.middleware(), self.error_middleware])
        app.on_response_prepare.append(self.cors.on_response_prepare)
        app.cleanup_ctx.append(self.lifecycle)

        app.router.add_get("/proxy/status", self.serve_status)
        app.router.add_get("/m3u8-proxy", self.serve_m3u8_proxy)
        app.router.add_get("/ts-proxy", self.serve_ts_proxy)
        app.router.add_get("/proxy/hls", self.serve_hls_proxy)
        app.router.add_get("/sub-proxy", self.serve_sub_proxy)
        app.router.add_get("/providers/{name}/watch", self.serve_provider_watch)
        return app

    def start(self):
        logger.info(f"Starting media relay at http://{self.host}:{self.port}")
        # cancel handlers when the client disconnects so in-flight origin fetches stop too
        web.run_app(self.create_app(), host=self.host, port=self.port, handler_cancellation=True)

    async def lifecycle(self, app):
        await self.relay.start()
        self.cache.start()
        yield
        await self.cache.stop()
        await self.relay.close()

    @web.middleware
    async def error_middleware(self, request, handler):
        try:
            return await handler(request)
        except (web.HTTPException, asyncio.CancelledError):
            raise
        except Exception as err:
            self.log.error("Unhandled relay error", err, path=request.path, query=dict(request.query), ip=request.remote)
            code = PROCESSING_CODES.get(request.path, "PROCESSING_ERROR")
            return error_response(ProcessingError("Internal server error", code=code, detail=str(err)))

    def _headers_param(self, request, kind):
        headers, err = parse_headers_param(request.query.get("headers"))
        if err is not None:
            self.log.warn(
                f"Invalid headers JSON in {kind} proxy request",
                error=str(err),
                length=len(request.query.get("headers", "")),
            )
        return headers

    def _validate_target(self, request, kind, suffixes):
        raw_url = request.query.get("url")
        if not raw_url:
            self.log.error(
                f"{kind} proxy request missing URL parameter",
                query=dict(request.query),
                ip=request.remote,
                userAgent=request.headers.get("User-Agent"),
            )
            raise ValidationError("URL parameter required", code="MISSING_URL_PARAMETER")

        target = normalize_target(raw_url, suffixes)
        if not is_absolute_http_url(target):
            self.log.error(f"Invalid URL format in {kind} proxy request", targetUrl=target, ip=request.remote)
            raise ValidationError("Invalid URL format", code="INVALID_URL_FORMAT")
        return target

    async def serve_status(self, request: web.Request):
        user_agent = request.headers.get("User-Agent")
        self.log.info("Proxy status check", userAgent=user_agent, ip=request.remote)
        return web.json_response({
            "status": "Proxy server is working",
            "timestamp": iso_timestamp(),
            "userAgent": user_agent,
        })

    async def serve_m3u8_proxy(self, request: web.Request):
        headers = self._headers_param(request, "M3U8")
        try:
            target = self._validate_target(request, "M3U8", (".m3u8",))
        except ValidationError as err:
            return error_response(err)

        context = RelayContext.for_target(server_url_for(request), target)
        proxy_request = ProxyRequest.build(target, context.apply_defaults(headers))

        self.log.log_proxy_request("M3U8", target, request.headers, request.query)
        response = await self.relay.relay_playlist(proxy_request, context)
        self.log.log_proxy_response("M3U8", target, response.status, response.headers)
        return response

    async def serve_ts_proxy(self, request: web.Request):
        headers = self._headers_param(request, "TS")
        try:
            target = self._validate_target(request, "TS", (".ts", ".m3u8"))
        except ValidationError as err:
            return error_response(err)

        context = RelayContext.for_target(server_url_for(request), target)
        proxy_request = ProxyRequest.build(
            target,
            context.apply_defaults(headers),
            range=request.headers.get("Range"),
        )

        self.log.log_proxy_request("TS", target, request.headers, request.query)
        response = await self.relay.relay_segment(request, proxy_request)
        self.log.log_proxy_response("TS", target, response.status, response.headers)
        return response

    async def serve_hls_proxy(self, request: web.Request):
        target = request.query.get("link")
        headers, err = parse_headers_param(request.query.get("headers"))
        if err is not None:
            logger.debug(f"ignoring invalid headers JSON on /proxy/hls: {err}")

        if not target:
            return web.json_response({"error": "Link parameter is required"}, status=400)

        context = RelayContext(server_url_for(request), {})
        return await self.relay.relay_playlist(ProxyRequest.build(target, headers), context)

    async def serve_sub_proxy(self, request: web.Request):
        target = request.query.get("url")
        headers, err = parse_headers_param(request.query.get("headers"))
        if err is not None:
            logger.debug(f"ignoring invalid headers JSON on /sub-proxy: {err}")

        if not target:
            return web.json_response({"error": "url parameter required"}, status=400)

        return await self.relay.relay_subtitle(request, ProxyRequest.build(target, headers))

    async def serve_provider_watch(self, request: web.Request):
        name = request.match_info["name"]
        provider = self.providers.get(name)
        if provider is None:
            return web.json_response({"error": f"Unknown provider {name}", "providers": self.providers.names()}, status=404)

        episode_id = request.query.get("id") or request.query.get("episodeId")
        if not episode_id:
            return error_response(ValidationError("id is required", code="MISSING_ID_PARAMETER"))
        server = request.query.get("server")

        key = f"provider:{name.lower()}:watch:{episode_id}:{server}"
        try:
            sources = await self.cache.fetch(
                key,
                lambda: provider.fetch_sources(episode_id, server),
                ttl=WATCH_CACHE_TTL,
            )
        except asyncio.CancelledError:
            raise
        except Exception as err:
            self.log.log_provider_error(name, err, episodeId=episode_id, server=server)
            return error_response(ProviderError("Something went wrong. Please try again later.", detail=str(err)))

        relayed = process_api_response(sources, server_url_for(request), self.config.direct_origins)
        return web.json_response(relayed)
