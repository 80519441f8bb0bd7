"""
Unit tests for the structured logging processors.
"""

import contextvars

import structlog
from opentelemetry import trace

from service_common.logging import (
    ServiceContext,
    add_correlation_context,
    add_trace_context,
    build_processors,
    clear_context,
    request_id_var,
    set_request_id,
    set_user_context,
    user_id_var,
)


class TestProcessors:
    """Test cases for the event dict processors."""

    def test_service_name_is_stamped(self):
        """Test every event carries the emitting service."""
        event = ServiceContext("movies")(None, "info", {"event": "Starting server"})

        assert event["service"] == "movies"

    def test_explicit_service_is_kept(self):
        """Test an event that names its own service is left alone."""
        event = ServiceContext("movies")(None, "info", {"event": "x", "service": "users"})

        assert event["service"] == "users"

    def test_correlation_ids_follow_the_context(self):
        """Test request and user ids bound in a context appear on its events."""
        def in_request():
            set_request_id("req-1")
            set_user_context(5)
            return add_correlation_context(None, "info", {"event": "HTTP request"})

        event = contextvars.copy_context().run(in_request)

        assert event["request_id"] == "req-1"
        assert event["user_id"] == "5"

    def test_no_correlation_ids_outside_a_request(self):
        """Test nothing is added when no ids are bound."""
        def outside_request():
            clear_context()
            return add_correlation_context(None, "info", {"event": "x"})

        event = contextvars.copy_context().run(outside_request)

        assert "request_id" not in event
        assert "user_id" not in event

    def test_no_trace_ids_without_a_span(self):
        """Test events outside a span have no trace fields."""
        event = add_trace_context(None, "info", {"event": "x"})

        assert "trace_id" not in event
        assert "span_id" not in event

    def test_trace_ids_of_the_current_span(self):
        """Test the active span's ids are rendered as hex."""
        span = trace.NonRecordingSpan(
            trace.SpanContext(trace_id=0xABC, span_id=0x12, is_remote=False)
        )

        with trace.use_span(span):
            event = add_trace_context(None, "info", {"event": "x"})

        assert event["trace_id"] == f"{0xABC:032x}"
        assert event["span_id"] == f"{0x12:016x}"

    def test_processor_chain_renders_last(self):
        """Test the chain ends with the JSON renderer, or the console one on request."""
        assert isinstance(build_processors("movies")[-1], structlog.processors.JSONRenderer)
        assert isinstance(build_processors("movies", json=False)[-1], structlog.dev.ConsoleRenderer)


class TestContextHelpers:
    """Test cases for binding and clearing request context."""

    def test_generated_request_id(self):
        """Test a missing request id is replaced by a fresh hex uuid."""
        def in_request():
            return set_request_id(None), request_id_var.get()

        returned, bound = contextvars.copy_context().run(in_request)

        assert returned == bound
        assert len(returned) == 32
        int(returned, 16)

    def test_missing_user_is_not_bound(self):
        """Test set_user_context(None) leaves the user unset."""
        def in_request():
            set_user_context(None)
            return user_id_var.get()

        assert contextvars.copy_context().run(in_request) is None

    def test_clear_context(self):
        """Test clearing unbinds both ids."""
        def in_request():
            set_request_id("req-2")
            set_user_context("7")
            clear_context()
            return request_id_var.get(), user_id_var.get()

        assert contextvars.copy_context().run(in_request) == (None, None)
