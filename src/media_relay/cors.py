import json
import logging
import re

from aiohttp import web

logger = logging.getLogger(__name__)

LOCALHOST_ORIGIN = re.compile(r"^http://localhost(?::\d+)?$")
ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOW_HEADERS = "Content-Type, Authorization, Range, Accept, Origin, X-Requested-With"
MAX_AGE = "86400"

CORS_HEADERS_KEY = "cors_headers"


def parse_allowed_origins(raw):
    """Allow-list from a JSON array or a comma-separated string."""
    if not raw:
        return frozenset()

    try:
        decoded = json.loads(raw)
    except ValueError:
        decoded = None

    if isinstance(decoded, list):
        return frozenset(str(item).strip() for item in decoded if str(item).strip())
    if isinstance(decoded, str):
        raw = decoded

    return frozenset(item.strip() for item in str(raw).split(",") if item.strip())


class CorsGuard:

    def __init__(self, allowed_origins=()):
        self.allowed_origins = frozenset(allowed_origins)

    def is_allowed(self, origin):
        if not origin:
            return False
        return bool(LOCALHOST_ORIGIN.match(origin)) or origin in self.allowed_origins

    def headers_for(self, origin):
        return {
            "Access-Control-Allow-Origin": origin if self.is_allowed(origin) else "*",
            "Vary": "Origin",
            "Access-Control-Allow-Methods": ALLOW_METHODS,
            "Access-Control-Allow-Headers": ALLOW_HEADERS,
            "Access-Control-Max-Age": MAX_AGE,
        }

    def middleware(self):
        """
        aiohttp middleware: preflight requests end here with a bare 204, every
        other request carries its CORS headers until the response is prepared.
        """
        @web.middleware
        async def cors_middleware(request, handler):
            headers = self.headers_for(request.headers.get("Origin", ""))

            if request.method == "OPTIONS":
                logger.debug(f"answering preflight for {request.path}")
                return web.Response(status=204, headers=headers)

            request[CORS_HEADERS_KEY] = headers
            return await handler(request)

        return cors_middleware

    async def on_response_prepare(self, request, response):
        """Signal handler, runs right before headers go out (streamed responses included)."""
        headers = request.get(CORS_HEADERS_KEY)
        if headers is None:
            headers = self.headers_for(request.headers.get("Origin", ""))
        response.headers.update(headers)
