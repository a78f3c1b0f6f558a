# ─────────────────────────────────────────────────────────────────────────────
# Tests — Response Logger
# ─────────────────────────────────────────────────────────────────────────────

from starlette.datastructures import Headers

from servicekit.logging_config import LoggingSetup
from servicekit.request_log import (
    RequestContext,
    ResponseLogger,
    forwarded_client,
    normalize_client,
    serialize_body,
)


def _context(**overrides) -> RequestContext:
    values = {
        "method": "GET",
        "path": "/ping",
        "query_string": "",
        "client_host": "10.0.0.7",
        "headers": Headers({}),
    }
    values.update(overrides)
    return RequestContext(**values)


def _logger(make_settings, **kwargs) -> ResponseLogger:
    setup = LoggingSetup(make_settings())
    setup.configured = True
    return ResponseLogger("Docs", setup, **kwargs)


class TestNormalizeClient:
    def test_ipv6_loopback(self):
        assert normalize_client("::1") == "127.0.0.1"

    def test_mapped_ipv4_loopback(self):
        assert normalize_client("::ffff:127.0.0.1") == "127.0.0.1"

    def test_other_addresses_unchanged(self):
        assert normalize_client("10.0.0.7") == "10.0.0.7"

    def test_normalization_can_be_disabled(self):
        assert normalize_client("::1", normalize_loopback=False) == "::1"

    def test_missing_client(self):
        assert normalize_client(None) == "-"


class TestSerializeBody:
    def test_empty_bodies(self):
        assert serialize_body(None) is None
        assert serialize_body({}) is None

    def test_dict_is_compact_json(self):
        assert serialize_body({"b": 1, "a": "x"}) == '{"a":"x","b":1}'

    def test_redacts_named_fields(self):
        assert serialize_body({"authorization": "abc123", "n": 1}, frozenset({"authorization"})) == (
            '{"authorization":"***","n":1}'
        )


class TestRequestContext:
    def test_from_scope(self):
        scope = {
            "type": "http",
            "method": "POST",
            "path": "/data",
            "query_string": b"x=1",
            "client": ("::1", 5000),
            "headers": [(b"authorization", b"abc123")],
        }
        context = RequestContext.from_scope(scope)
        assert context.url == "/data?x=1"
        assert context.client_host == "::1"
        assert context.headers["authorization"] == "abc123"
        assert context.logged is False


class TestLogCompletion:
    """Tests for ResponseLogger.log_completion()."""

    def test_logs_once(self, make_settings, logs):
        logger = _logger(make_settings)
        context = _context(status_code=200)

        assert logger.log_completion(context) is True
        assert logger.log_completion(context) is False

        assert len(logs) == 1
        entry = logs[0]
        assert entry["event"] == "request_completed"
        assert entry["app"] == "Docs"
        assert entry["status"] == 200
        assert entry["method"] == "GET"
        assert entry["url"] == "/ping"
        assert entry["client"] == "10.0.0.7"
        assert "body" not in entry
        assert entry["line"] == "[Docs] 200 GET /ping 10.0.0.7"

    def test_body_and_query_in_line(self, make_settings, logs):
        logger = _logger(make_settings, redact_fields=frozenset({"authorization"}))
        context = _context(
            method="POST",
            path="/data",
            query_string="v=2",
            client_host="::1",
            body={"authorization": "abc123", "name": "x"},
            status_code=201,
        )
        logger.log_completion(context)

        entry = logs[0]
        assert entry["body"] == '{"authorization":"***","name":"x"}'
        assert entry["line"] == '[Docs] 201 POST /data?v=2 {"authorization":"***","name":"x"} 127.0.0.1'
        assert "abc123" not in entry["line"]

    def test_disconnect_logged_as_499(self, make_settings, logs):
        logger = _logger(make_settings)
        logger.log_completion(_context(status_code=200, client_disconnected=True))

        entry = logs[0]
        assert entry["status"] == 499
        assert entry["client_disconnected"] is True
        assert entry["response_status"] == 200

    def test_lazy_logging_setup_runs_once(self, make_settings, monkeypatch):
        calls = []
        monkeypatch.setattr(
            "servicekit.logging_config.configure_logging", lambda **kwargs: calls.append(kwargs)
        )
        setup = LoggingSetup(make_settings(log_level="WARNING"))
        logger = ResponseLogger("Docs", setup)

        logger.log_completion(_context(status_code=200))
        logger.log_completion(_context(status_code=200))

        assert setup.configured is True
        assert len(calls) == 1
        assert calls[0]["log_level"] == "WARNING"


class TestForwardedFor:
    def test_forwarded_client_takes_first_entry(self):
        headers = Headers({"x-forwarded-for": "203.0.113.9, 10.0.0.1"})
        assert forwarded_client(headers) == "203.0.113.9"
        assert forwarded_client(Headers({})) is None

    def test_peer_logged_by_default(self, make_settings, logs):
        logger = _logger(make_settings)
        headers = Headers({"x-forwarded-for": "203.0.113.9"})
        logger.log_completion(_context(headers=headers, status_code=200))
        assert logs[0]["client"] == "10.0.0.7"

    def test_forwarded_address_logged_when_enabled(self, make_settings, logs):
        logger = _logger(make_settings, log_forwarded_for=True)
        headers = Headers({"x-forwarded-for": "203.0.113.9, 10.0.0.1"})
        logger.log_completion(_context(headers=headers, status_code=200))
        assert logs[0]["client"] == "203.0.113.9"
        assert logs[0]["line"].endswith(" 203.0.113.9")

    def test_falls_back_to_peer_without_header(self, make_settings, logs):
        logger = _logger(make_settings, log_forwarded_for=True)
        logger.log_completion(_context(status_code=200))
        assert logs[0]["client"] == "10.0.0.7"
