"""
Leveled JSON event logger used by every relay component.

Each call builds one event `{timestamp, level, message, **context}` and
writes it as a single JSON line through a stdlib logger when its severity
passes the configured minimum. Header- and query-shaped maps in the context
are redacted before anything is written.
"""
import json
import logging
import time
import traceback
from dataclasses import dataclass
from typing import FrozenSet

from .utilities import iso_timestamp

SEVERITY = {"error": 0, "warn": 1, "info": 2, "debug": 3}
DEFAULT_LEVEL = "info"
REDACTED = "[REDACTED]"

STDLIB_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


@dataclass(frozen=True)
class RedactionPolicy:
    header_keys: FrozenSet[str] = frozenset({"authorization", "cookie", "x-api-key", "x-auth-token"})
    query_keys: FrozenSet[str] = frozenset({"token", "key", "secret", "password", "api_key"})
    header_fields: FrozenSet[str] = frozenset({"headers", "response_headers", "request_headers"})
    query_fields: FrozenSet[str] = frozenset({"query", "params"})

    @staticmethod
    def _scrub(mapping, sensitive):
        try:
            items = list(mapping.items())
        except AttributeError:
            return mapping
        scrubbed = {}
        for name, value in items:
            scrubbed[name] = REDACTED if str(name).lower() in sensitive else value
        return scrubbed

    def _scrub_query(self, query):
        scrubbed = self._scrub(query, self.query_keys)
        embedded = scrubbed.get("headers") if isinstance(scrubbed, dict) else None
        if isinstance(embedded, str):
            # relay endpoints carry outbound headers as a JSON query value
            try:
                decoded = json.loads(embedded)
            except ValueError:
                decoded = None
            scrubbed["headers"] = self._scrub(decoded, self.header_keys) if isinstance(decoded, dict) else REDACTED
        return scrubbed

    def apply(self, context):
        redacted = {}
        for field_name, value in context.items():
            if field_name in self.header_fields:
                value = self._scrub(value, self.header_keys)
            elif field_name in self.query_fields:
                value = self._scrub_query(value)
            redacted[field_name] = value
        return redacted


def describe_error(error):
    if error is None:
        return None
    stack = None
    tb = getattr(error, "__traceback__", None)
    if tb is not None:
        stack = "".join(traceback.format_exception(type(error), error, tb))
    return {
        "message": str(error),
        "kind": type(error).__name__,
        "code": getattr(error, "code", None),
        "stack": stack,
    }


class ProxyLogger:

    def __init__(self, level=DEFAULT_LEVEL, detailed=False, logger=None,
                 policy=None, clock=time.time):
        self.level = level if level in SEVERITY else DEFAULT_LEVEL
        self.detailed = detailed
        self.logger = logger or logging.getLogger("media_relay.proxy")
        self.policy = policy or RedactionPolicy()
        self.clock = clock

    @classmethod
    def from_config(cls, config, **kwargs):
        return cls(level=config.log_level, detailed=config.detailed_logging, **kwargs)

    def enabled_for(self, level):
        return SEVERITY.get(level, SEVERITY[DEFAULT_LEVEL]) <= SEVERITY[self.level]

    def build_event(self, level, message, context):
        event = {
            "timestamp": iso_timestamp(),
            "level": level.upper(),
            "message": message,
        }
        event.update(self.policy.apply(context))
        return event

    def log(self, level, message, **context):
        if not self.enabled_for(level):
            return None

        try:
            event = self.build_event(level, message, context)
            line = json.dumps(event, default=str)
        except Exception as err:
            # a broken context must never take the caller down with it
            event = {
                "timestamp": iso_timestamp(),
                "level": level.upper(),
                "message": str(message),
                "contextError": f"{type(err).__name__}: {err}",
            }
            line = json.dumps(event)

        self.logger.log(STDLIB_LEVELS.get(level, logging.INFO), line)
        return event

    def error(self, message, error=None, **context):
        try:
            context["error"] = describe_error(error)
        except Exception as err:
            context["error"] = {"message": None, "kind": type(error).__name__, "code": None, "stack": None}
            context["contextError"] = f"{type(err).__name__}: {err}"
        return self.log("error", message, **context)

    def warn(self, message, **context):
        return self.log("warn", message, **context)

    def info(self, message, **context):
        return self.log("info", message, **context)

    def debug(self, message, **context):
        return self.log("debug", message, **context)

    def log_proxy_request(self, kind, url, headers=None, query=None):
        if not self.detailed:
            return None
        headers = headers or {}
        lookup = {str(name).lower(): value for name, value in headers.items()}
        return self.info(
            f"Proxy {kind} request",
            url=url,
            headers=headers,
            query=query or {},
            userAgent=lookup.get("user-agent"),
            referer=lookup.get("referer"),
            origin=lookup.get("origin"),
        )

    def log_proxy_response(self, kind, url, status, response_headers=None, error=None):
        if not self.detailed:
            return None
        context = {
            "url": url,
            "statusCode": status,
            "response_headers": response_headers or {},
            "responseTime": int(self.clock() * 1000),
        }
        if error is not None:
            return self.error(f"Proxy {kind} response error", error, **context)
        return self.info(f"Proxy {kind} response success", **context)

    def log_provider_error(self, provider, error, **context):
        return self.error(f"Provider {provider} error", error, provider=provider, **context)

    def log_rate_limit(self, provider, retry_after=None):
        return self.warn(
            f"Rate limit hit for provider {provider}",
            provider=provider,
            retryAfter=retry_after,
            at=int(self.clock() * 1000),
        )
