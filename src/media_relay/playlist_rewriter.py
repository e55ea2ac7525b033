"""
Line-by-line HLS playlist rewriting.

Every line is classified on its own (no state carries over between lines)
and only the URLs it references are replaced by relay URLs; tags, attributes
and durations are left as they are.
"""
import logging
import re
from dataclasses import dataclass
from typing import Union
from urllib.parse import quote, urljoin, urlsplit

from m3u8 import protocol

from .url_resolver import strip_quote_garbage

logger = logging.getLogger(__name__)

PLAYLIST_ENDPOINT = "/m3u8-proxy"
SEGMENT_ENDPOINT = "/ts-proxy"

# path suffix -> relay endpoint, anything else is relayed as an opaque segment
SUFFIX_ENDPOINTS = (
    (".m3u8", PLAYLIST_ENDPOINT),
    (".ts", SEGMENT_ENDPOINT),
)

URI_ATTRIBUTE = re.compile(r'URI="([^"]+)"')
REFERENCE_TOKEN = re.compile(
    r"\S+?\.(?:m3u8|ts)(?=$|[?#\s\"'])(?:\?[^\s\"']*)?",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Comment:
    text: str

@dataclass(frozen=True)
class MediaTag:
    text: str
    uri: str

@dataclass(frozen=True)
class KeyTag:
    text: str
    uri: str

@dataclass(frozen=True)
class Reference:
    text: str
    uri: str

@dataclass(frozen=True)
class Passthrough:
    text: str

PlaylistLine = Union[Comment, MediaTag, KeyTag, Reference, Passthrough]


def tokenize_line(line):
    """Classify one playlist line (surrounding whitespace is dropped)."""
    text = line.strip()

    if not text:
        return Passthrough(text)

    if text.startswith("#"):
        if "URI=" not in text:
            return Comment(text)

        match = URI_ATTRIBUTE.search(text)
        if match and text.startswith(protocol.ext_x_media + ":"):
            return MediaTag(text, match.group(1))
        if match and text.startswith(protocol.ext_x_key + ":"):
            return KeyTag(text, match.group(1))
        return Passthrough(text)

    token = REFERENCE_TOKEN.search(text)
    candidate = token.group(0) if token else text
    return Reference(text, strip_quote_garbage(candidate))

def endpoint_for(url):
    path = urlsplit(url).path.lower()
    for suffix, endpoint in SUFFIX_ENDPOINTS:
        if path.endswith(suffix):
            return endpoint
    return SEGMENT_ENDPOINT

def relay_url(server_url, endpoint, target):
    return f"{server_url}{endpoint}?url={quote(target, safe='')}"

def _absolute(reference, source_url):
    absolute = urljoin(source_url, reference)
    parts = urlsplit(absolute)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"unable to resolve {reference!r} against {source_url!r}")
    return absolute

def rewrite_line(line, source_url, server_url):
    token = tokenize_line(line) if isinstance(line, str) else line

    try:
        if isinstance(token, MediaTag):
            proxied = relay_url(server_url, PLAYLIST_ENDPOINT, _absolute(token.uri, source_url))
            return token.text.replace(f'URI="{token.uri}"', f'URI="{proxied}"', 1)

        if isinstance(token, KeyTag):
            proxied = relay_url(server_url, SEGMENT_ENDPOINT, _absolute(token.uri, source_url))
            return token.text.replace(f'URI="{token.uri}"', f'URI="{proxied}"', 1)

        if isinstance(token, Reference):
            absolute = _absolute(token.uri, source_url)
            return relay_url(server_url, endpoint_for(absolute), absolute)

    except ValueError as err:
        logger.debug(f"keeping line unchanged, {err}")

    return token.text

def rewrite_playlist(body, source_url, server_url):
    """Rewrite every URL in `body` to go through the relay at `server_url`."""
    lines = body.split("\n")
    rewritten = [rewrite_line(line, source_url, server_url) for line in lines]
    logger.debug(f"rewrote {len(rewritten)} playlist lines from {source_url}")
    return "\n".join(rewritten)
