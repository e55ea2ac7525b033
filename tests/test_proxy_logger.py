# tests/test_proxy_logger.py
import json
import logging

from media_relay.proxy_logger import REDACTED, ProxyLogger

LOGGER_NAME = "tests.proxy_logger"


def _events(caplog):
    return [json.loads(record.getMessage()) for record in caplog.records if record.name == LOGGER_NAME]

def make_logger(**kwargs):
    return ProxyLogger(logger=logging.getLogger(LOGGER_NAME), **kwargs)


def test_severity_filtering(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log = make_logger(level="warn")

    log.debug("hidden")
    log.info("hidden")
    log.warn("shown")
    log.error("shown too")

    assert [event["level"] for event in _events(caplog)] == ["WARN", "ERROR"]

def test_unknown_level_defaults_to_info():
    log = make_logger(level="chatty")
    assert log.level == "info"
    assert log.enabled_for("info")
    assert not log.enabled_for("debug")

def test_headers_and_query_are_redacted_case_insensitively(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log = make_logger(level="debug")

    log.info(
        "request",
        headers={"Authorization": "Bearer abc", "COOKIE": "sid=1", "Accept": "*/*"},
        query={"Token": "t", "api_key": "k", "url": "https://cdn.example.com/a.m3u8"},
    )

    event = _events(caplog)[0]
    assert event["headers"] == {"Authorization": REDACTED, "COOKIE": REDACTED, "Accept": "*/*"}
    assert event["query"]["Token"] == REDACTED
    assert event["query"]["api_key"] == REDACTED
    assert event["query"]["url"] == "https://cdn.example.com/a.m3u8"

def test_error_events_describe_the_failure(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log = make_logger()

    try:
        raise ValueError("boom")
    except ValueError as err:
        log.error("failed", err, targetUrl="https://cdn.example.com/a.ts")

    event = _events(caplog)[0]
    assert event["error"]["message"] == "boom"
    assert event["error"]["kind"] == "ValueError"
    assert "Traceback" in event["error"]["stack"]

def test_unserializable_context_does_not_raise(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log = make_logger()

    class Weird:
        def __repr__(self):
            raise RuntimeError("no repr")

        def __str__(self):
            raise RuntimeError("no str")

    log.info("odd context", thing=Weird())
    log.info("after")

    assert _events(caplog)[-1]["message"] == "after"

def test_detailed_helpers_are_gated(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)

    make_logger(level="debug").log_proxy_request("TS", "https://cdn.example.com/a.ts", {"User-Agent": "x"}, {})
    assert _events(caplog) == []

    make_logger(detailed=True).log_proxy_request(
        "TS", "https://cdn.example.com/a.ts", {"User-Agent": "x", "X-Api-Key": "secret"}, {"password": "p"}
    )
    event = _events(caplog)[0]
    assert event["message"] == "Proxy TS request"
    assert event["userAgent"] == "x"
    assert event["headers"]["X-Api-Key"] == REDACTED
    assert event["query"]["password"] == REDACTED

def test_provider_helpers(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log = make_logger()

    log.log_rate_limit("kissasian", retry_after=30)
    log.log_provider_error("kissasian", RuntimeError("down"), episodeId="ep-1")

    rate_limit, failure = _events(caplog)
    assert rate_limit["retryAfter"] == 30
    assert failure["provider"] == "kissasian"
    assert failure["error"]["kind"] == "RuntimeError"

def test_headers_json_in_query_is_redacted(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log = make_logger(level="debug")

    log.info("request", query={
        "url": "https://cdn.example.com/a.m3u8",
        "headers": json.dumps({"Cookie": "sid=1", "authorization": "Bearer abc", "Referer": "https://site.example/"}),
    })
    log.info("request", query={"headers": "{not json, Cookie: sid=1"})

    first, second = _events(caplog)
    assert first["query"]["url"] == "https://cdn.example.com/a.m3u8"
    assert first["query"]["headers"] == {
        "Cookie": REDACTED,
        "authorization": REDACTED,
        "Referer": "https://site.example/",
    }
    assert second["query"]["headers"] == REDACTED

def test_error_with_non_exception_value_does_not_raise(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log = make_logger()

    log.error("odd failure", "not an exception")

    (event,) = _events(caplog)
    assert event["error"]["message"] == "not an exception"
    assert event["error"]["kind"] == "str"
    assert event["error"]["stack"] is None
