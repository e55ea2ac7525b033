"""
Rewrites a Content Provider's media-location payload so every file and
subtitle URL points at this relay instead of the origin.
"""
import json
import logging
from urllib.parse import quote

from multidict import CIMultiDict

from .url_resolver import extract_original_url, resolve_origin

logger = logging.getLogger(__name__)

DIRECT_VIDEO_EXTENSIONS = (".mp4", ".mkv", ".webm", ".avi")


def is_manifest_like(url):
    """HLS manifests and anything without a known direct-video extension."""
    if "m3u8" in url:
        return True
    return not any(extension in url for extension in DIRECT_VIDEO_EXTENSIONS)

def _with_origin_defaults(headers, url, direct_origins):
    headers = CIMultiDict(headers or {})
    origin = resolve_origin(url, direct_origins)
    if origin:
        for name in ("Referer", "Origin"):
            if not headers.get(name):
                headers.popall(name, None)
                headers[name] = origin
    return dict(headers.items())

def _relay_link(server_url, endpoint, url, headers):
    encoded_headers = quote(json.dumps(headers, separators=(",", ":")), safe="")
    return f"{server_url}{endpoint}?url={quote(url, safe='')}&headers={encoded_headers}"

def rewrite_file(record, server_url, direct_origins=()):
    if not isinstance(record, dict):
        return record
    url = record.get("file")
    if not isinstance(url, str) or not url:
        return dict(record)

    original = extract_original_url(url)
    headers = _with_origin_defaults(record.get("headers"), original, direct_origins)

    if is_manifest_like(original):
        return {
            **record,
            "file": _relay_link(server_url, "/m3u8-proxy", original, headers),
            "type": "hls",
            "headers": headers,
        }

    return {
        **record,
        "file": _relay_link(server_url, "/ts-proxy", original, headers),
        "type": record.get("type") or "mp4",
        "headers": headers,
    }

def rewrite_subtitle(record, server_url):
    if not isinstance(record, dict):
        return record
    url = record.get("url")
    if not isinstance(url, str) or not url:
        return dict(record)
    return {**record, "url": f"{server_url}/sub-proxy?url={quote(url, safe='')}"}

def process_api_response(api_response, server_url, direct_origins=()):
    """Return a relayed copy of `api_response`; the input is left untouched."""
    files = api_response.get("files") if isinstance(api_response, dict) else None
    if not isinstance(files, list):
        return api_response

    processed_files = [rewrite_file(record, server_url, direct_origins) for record in files]
    processed_subtitles = [
        rewrite_subtitle(record, server_url)
        for record in api_response.get("subtitles") or []
    ]
    logger.debug(f"relayed {len(processed_files)} files and {len(processed_subtitles)} subtitles through {server_url}")

    return {
        **api_response,
        "files": processed_files,
        "subtitles": processed_subtitles,
    }
