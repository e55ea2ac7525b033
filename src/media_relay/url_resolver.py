"""
Helpers for recovering the real origin URL behind wrapped/encoded proxy URLs
and for deriving the origin used as default Referer/Origin.
"""
import logging
import re
from urllib.parse import parse_qs, unquote, urlsplit

logger = logging.getLogger(__name__)

MAX_DECODE_PASSES = 10
DEFAULT_PORTS = {"http": 80, "https": 443}

# tried in order after the /proxy/ path and ?url= forms, first match wins
THIRD_PARTY_PROXY_PATTERNS = (
    re.compile(r"/api/[^/]+/proxy\?url=(.+)$"),
    re.compile(r"/proxy\?.*url=([^&]+)"),
    re.compile(r"/stream/proxy/(.+)$"),
    re.compile(r"/p/(.+)$"),
)

PROXY_PATH_PATTERN = re.compile(r"/proxy/(.+)$")
NESTED_RELAY_PATTERN = re.compile(r"ts-proxy\?url=([^&]+)", re.IGNORECASE)
QUOTE_GARBAGE_PATTERNS = (
    re.compile(r"%2522.*$", re.IGNORECASE),
    re.compile(r"%22.*$", re.IGNORECASE),
)


def _strict_unquote(value):
    return unquote(value, errors="strict")

def is_absolute_http_url(value):
    if not isinstance(value, str):
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme.lower() in DEFAULT_PORTS and bool(parts.hostname)

def origin_of(url):
    """scheme://host[:port] of an absolute URL, default ports omitted. None if unparseable."""
    try:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        host = parts.hostname
        port = parts.port
    except (ValueError, TypeError, AttributeError):
        return None

    if not scheme or not host:
        return None

    if ":" in host:
        host = f"[{host}]"
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"

def resolve_origin(url, direct_origins=()):
    """
    Origin to use as default Referer/Origin for `url`.

    Returns None when the URL cannot be parsed or when its origin belongs to
    one of `direct_origins`, hosts that serve media without a Referer and
    must not get one synthesized.
    """
    origin = origin_of(url)
    if origin is None:
        return None

    for direct in direct_origins:
        if direct and direct in origin:
            logger.debug(f"{origin} is a direct origin, no Referer/Origin synthesized")
            return None
    return origin

def strip_quote_garbage(url):
    """Drop the `%22...`/`%2522...` tail that double-encoded quotes leave behind."""
    for pattern in QUOTE_GARBAGE_PATTERNS:
        url = pattern.sub("", url)
    return url

def unwrap_nested_relay(url):
    """Recover the target of a URL that is itself a `ts-proxy?url=...` reference."""
    match = NESTED_RELAY_PATTERN.search(url)
    if match:
        try:
            url = _strict_unquote(match.group(1))
        except UnicodeDecodeError:
            logger.debug(f"unable to decode nested relay url {url}")
    return strip_quote_garbage(url)

def normalize_target(url, suffixes=(".m3u8",)):
    """
    Cut `url` down to its first token ending in one of `suffixes` (an optional
    query string is kept) and strip quote garbage. URLs without such a token
    are only stripped.
    """
    alternatives = "|".join(re.escape(suffix) for suffix in suffixes)
    pattern = re.compile(rf"\S+?(?:{alternatives})(?=$|[?#\s\"'])(?:\?[^\s\"']*)?", re.IGNORECASE)
    match = pattern.match(url)
    if match:
        url = match.group(0)
    return strip_quote_garbage(url)

def _decode_proxy_path(path):
    match = PROXY_PATH_PATTERN.search(path)
    if not match:
        return None

    try:
        decoded = _strict_unquote(match.group(1))
    except UnicodeDecodeError:
        return None

    passes = 0
    while "%2F" in decoded and passes < MAX_DECODE_PASSES:
        try:
            decoded = _strict_unquote(decoded)
        except UnicodeDecodeError:
            break
        passes += 1
    return decoded

def _unwrap_once(url):
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    if not parts.scheme or not parts.netloc:
        return url

    candidates = []
    if "/proxy/" in parts.path:
        candidates.append(lambda: _decode_proxy_path(parts.path))

    def from_query():
        values = parse_qs(parts.query).get("url")
        return values[0] if values else None
    candidates.append(from_query)

    for pattern in THIRD_PARTY_PROXY_PATTERNS:
        def from_pattern(pattern=pattern):
            match = pattern.search(url)
            if not match:
                return None
            try:
                return _strict_unquote(match.group(1))
            except UnicodeDecodeError:
                return None
        candidates.append(from_pattern)

    for candidate in candidates:
        found = candidate()
        if found and found != url and is_absolute_http_url(found):
            return found
    return url

def extract_original_url(proxy_url):
    """
    Recover the innermost real target of a (possibly repeatedly) wrapped proxy URL.

    Tries a `/proxy/<encoded>` path, then a `url` query parameter, then the
    known third-party proxy shapes; returns the input unchanged when none
    apply. Unwrapping is repeated to a fixpoint, so the result is stable
    under a second application. Never raises.
    """
    if not isinstance(proxy_url, str):
        return proxy_url

    current = proxy_url
    while True:
        unwrapped = _unwrap_once(current)
        # every accepted unwrap is a strict substring or decoding of its input
        if unwrapped == current or len(unwrapped) >= len(current):
            return current
        current = unwrapped
