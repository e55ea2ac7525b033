# tests/test_cors.py
from media_relay.cors import ALLOW_METHODS, CorsGuard, parse_allowed_origins


def test_parse_allowed_origins_json_and_csv():
    assert parse_allowed_origins('["https://a.example", "https://b.example"]') == {"https://a.example", "https://b.example"}
    assert parse_allowed_origins("https://a.example, https://b.example,") == {"https://a.example", "https://b.example"}
    assert parse_allowed_origins(None) == frozenset()
    assert parse_allowed_origins("") == frozenset()

def test_localhost_and_listed_origins_are_echoed():
    guard = CorsGuard({"https://app.example.com"})
    assert guard.headers_for("http://localhost:3000")["Access-Control-Allow-Origin"] == "http://localhost:3000"
    assert guard.headers_for("http://localhost")["Access-Control-Allow-Origin"] == "http://localhost"
    assert guard.headers_for("https://app.example.com")["Access-Control-Allow-Origin"] == "https://app.example.com"

def test_other_origins_get_wildcard():
    guard = CorsGuard()
    assert guard.headers_for("https://evil.example")["Access-Control-Allow-Origin"] == "*"
    assert guard.headers_for("https://localhost:3000")["Access-Control-Allow-Origin"] == "*"
    assert guard.headers_for("")["Access-Control-Allow-Origin"] == "*"

def test_fixed_headers_always_present():
    headers = CorsGuard().headers_for("https://evil.example")
    assert headers["Vary"] == "Origin"
    assert headers["Access-Control-Allow-Methods"] == ALLOW_METHODS
    assert "Range" in headers["Access-Control-Allow-Headers"]
    assert headers["Access-Control-Max-Age"] == "86400"
