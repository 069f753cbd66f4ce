"""Tests for utils/request_context.py - per-request API metadata."""

from types import SimpleNamespace

from starlette.requests import Request

from utils.request_context import (
    ApiRequestContext,
    api_request_context,
    bind_api_context,
    clear_api_context,
    client_ip,
    ensure_api_context,
    get_api_context,
)


def make_request(client):
    scope = {"type": "http", "method": "GET", "path": "/", "headers": [], "client": client}
    return Request(scope)


class TestApiRequestContext:
    """Tests for the mutable context object."""

    def test_new_trace_assigns_id(self):
        context = ApiRequestContext()
        trace_id = context.new_trace()
        assert context.trace_id == trace_id
        assert len(trace_id) == 36

    def test_new_trace_is_fresh(self):
        context = ApiRequestContext()
        assert context.new_trace() != context.new_trace()

    def test_set_failure_overwrites_by_default(self):
        context = ApiRequestContext()
        context.set_failure("validation-failed")
        context.set_failure("server-error")
        assert context.failure_reason == "server-error"

    def test_set_failure_keeps_first_when_asked(self):
        """Reasons recorded by authentication survive later error rendering."""
        context = ApiRequestContext()
        context.set_failure("ip-denied")
        context.set_failure("validation-failed", overwrite=False)
        assert context.failure_reason == "ip-denied"

    def test_set_failure_without_overwrite_fills_empty(self):
        context = ApiRequestContext()
        context.set_failure("conflict", overwrite=False)
        assert context.failure_reason == "conflict"


class TestBinding:

    def test_nothing_bound_by_default(self):
        assert get_api_context() is None

    def test_bind_and_clear(self):
        context = ApiRequestContext()
        bind_api_context(context)
        assert get_api_context() is context
        clear_api_context()
        assert get_api_context() is None

    def test_ensure_creates_and_stores_on_state(self):
        state = SimpleNamespace()
        context = ensure_api_context(state)
        assert state.api_context is context
        assert get_api_context() is context

    def test_ensure_reuses_existing(self):
        existing = ApiRequestContext(trace_id="abc")
        state = SimpleNamespace(api_context=existing)
        assert ensure_api_context(state) is existing

    def test_context_manager_restores_previous(self):
        outer = ApiRequestContext(trace_id="outer")
        bind_api_context(outer)
        with api_request_context(ApiRequestContext(trace_id="inner")) as inner:
            assert get_api_context() is inner
        assert get_api_context() is outer

    def test_context_manager_creates_context(self):
        with api_request_context() as context:
            assert isinstance(context, ApiRequestContext)
            assert context.trace_id is None
        assert get_api_context() is None


class TestClientIp:

    def test_ipv4(self):
        assert client_ip(make_request(("10.1.2.3", 50000))) == "10.1.2.3"

    def test_ipv6(self):
        assert client_ip(make_request(("2001:db8::1", 50000))) == "2001:db8::1"

    def test_non_ip_host(self):
        """Test clients report a hostname rather than an address."""
        assert client_ip(make_request(("testclient", 50000))) is None

    def test_no_client(self):
        assert client_ip(make_request(None)) is None
