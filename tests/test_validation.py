"""Tests for input/output validation and response envelopes."""

import pytest


VALID_NEWSLETTER = {
    "topics": ["AI agents", "Vector search"],
    "audience": ["engineers"],
    "tone": "friendly",
    "flavors": ["deep-dive"],
    "imageStyle": "photorealistic",
}


class TestSanitization:
    """Tests for string sanitization."""

    @pytest.mark.parametrize("raw", [
        "<script>alert('x')</script>",
        'Tom & "Jerry"',
        "already &amp; escaped &lt;b&gt;",
        "&#39; and &#x27; and &unknown;",
        "plain text",
        "",
    ])
    def test_sanitize_is_idempotent(self, raw):
        """Sanitizing an already sanitized string changes nothing."""
        from control_plane.validation import sanitize_string

        once = sanitize_string(raw)

        assert sanitize_string(once) == once

    def test_sanitize_escapes_html(self):
        from control_plane.validation import sanitize_string

        assert sanitize_string("<b>\"Tom\" & 'Jerry'</b>") == (
            "&lt;b&gt;&quot;Tom&quot; &amp; &#x27;Jerry&#x27;&lt;/b&gt;"
        )

    def test_truncation_never_splits_entities(self):
        from control_plane.validation import sanitize_string

        assert sanitize_string("ab<", max_length=4) == "ab"
        assert sanitize_string("abcdef", max_length=3) == "abc"

    def test_sanitize_value_recurses(self):
        from control_plane.validation import sanitize_value

        data = {"a": ["<x>", {"b": "'"}], "n": 3, "t": ("&",)}

        assert sanitize_value(data) == {"a": ["&lt;x&gt;", {"b": "&#x27;"}], "n": 3, "t": ["&amp;"]}


class TestInputValidator:
    """Tests for InputValidator."""

    def test_valid_request_model(self):
        """Accepted bodies come back camelCased and sanitized."""
        from control_plane.schemas import GenerateNewsletterRequest
        from control_plane.validation import validate_input

        body = {**VALID_NEWSLETTER, "tone": "<b>bold</b>"}

        result = validate_input(body, GenerateNewsletterRequest)

        assert result.success
        assert result.data["imageStyle"] == "photorealistic"
        assert result.data["tone"] == "&lt;b&gt;bold&lt;/b&gt;"

    def test_request_model_errors_carry_fields(self):
        from control_plane.schemas import GenerateNewsletterRequest
        from control_plane.validation import validate_input

        body = {**VALID_NEWSLETTER, "topics": []}
        del body["tone"]

        result = validate_input(body, GenerateNewsletterRequest)

        assert not result.success
        fields = {e.field for e in result.errors}
        assert fields == {"topics", "tone"}
        missing = next(e for e in result.errors if e.field == "tone")
        assert missing.code == "missing"
        assert missing.received is None
        assert result.message.startswith("2 validation errors: ")

    def test_summary_lists_three_fields_then_ellipsis(self):
        from control_plane.validation import validate_input

        schema = {"type": "object", "required": ["f1", "f2", "f3", "f4"]}

        result = validate_input({}, schema)

        assert result.message == "4 validation errors: f1, f2, f3..."
        assert len(result.errors) == 4

    def test_single_error_summary(self):
        from control_plane.validation import validate_input

        schema = {"type": "object", "properties": {"limit": {"type": "integer"}}}

        result = validate_input({"limit": "ten"}, schema)

        assert result.message.startswith("limit: ")
        assert result.errors[0].expected == "integer"
        assert result.errors[0].received == "string"

    def test_query_and_params_are_not_escaped(self):
        from control_plane.schemas import IdParams
        from control_plane.validation import validate_params, validate_query

        params = validate_params({"id": "a&b"}, IdParams)
        query = validate_query({"q": "<x>"}, None)

        assert params.data == {"id": "a&b"}
        assert query.data == {"q": "<x>"}

    def test_unexpected_error_is_generic(self):
        from control_plane.validation import validate_input

        result = validate_input({}, object())

        assert not result.success
        assert result.message == "Validation failed due to unexpected error"
        assert result.errors == []

    def test_configure_disables_sanitization(self):
        from control_plane.validation import configure_input_validator, reset_input_validator_config, validate_input

        configure_input_validator(sanitize_strings=False)
        assert validate_input({"a": "<x>"}, {"type": "object"}).data == {"a": "<x>"}

        reset_input_validator_config()
        assert validate_input({"a": "<x>"}, {"type": "object"}).data == {"a": "&lt;x&gt;"}


class TestOutputValidator:
    """Tests for outgoing data sanitization."""

    def test_removes_sensitive_fields_recursively(self):
        from control_plane.responses import remove_sensitive_fields

        data = {
            "id": "n1",
            "apiKey": "sk-1",
            "owner": {"email": "a@b.co", "accessToken": "t", "password": "p"},
            "keys": [{"refresh_token": "r", "name": "x"}],
        }

        assert remove_sensitive_fields(data) == {
            "id": "n1",
            "owner": {"email": "a@b.co"},
            "keys": [{"name": "x"}],
        }

    def test_added_fields_are_stripped(self):
        from control_plane.responses import add_sensitive_fields, remove_sensitive_fields

        add_sensitive_fields("ssn")

        assert remove_sensitive_fields({"ssn": "1", "name": "x"}) == {"name": "x"}

    def test_schema_mismatch_only_warns(self):
        from control_plane.responses import validate_output

        result = validate_output({"id": 1}, {"type": "object", "properties": {"id": {"type": "string"}}})

        assert not result.success
        assert result.data == {"id": 1}
        assert result.warnings


class TestResponses:
    """Tests for the response envelope and error codes."""

    def test_error_code_statuses(self):
        from control_plane.responses import error_code_to_status

        assert error_code_to_status("VALIDATION_ERROR") == 400
        assert error_code_to_status("MISSING_API_KEY") == 401
        assert error_code_to_status("UNKNOWN_AUTH_TYPE") == 401
        assert error_code_to_status("ROUTE_NOT_FOUND") == 404
        assert error_code_to_status("TOOL_DISABLED") == 503
        assert error_code_to_status("TOOL_TIMEOUT") == 504
        assert error_code_to_status("SOMETHING_ELSE") == 500

    def test_api_response_times_from_start(self):
        import time

        from control_plane.responses import build_api_response

        envelope = build_api_response({"ok": True}, correlation_id="c2", start_time=time.monotonic() - 0.05)

        assert envelope.success
        assert envelope.meta.correlation_id == "c2"
        assert envelope.meta.duration >= 50
        assert build_api_response({"ok": True}).meta.duration == 0

    def test_success_envelope(self):
        from control_plane.responses import build_success_response

        envelope = build_success_response({"id": "n1", "token": "t"}, correlation_id="c1", duration=12.3456).to_dict()

        assert envelope["success"] is True
        assert envelope["data"] == {"id": "n1"}
        assert envelope["meta"]["correlation_id"] == "c1"
        assert envelope["meta"]["duration"] == 12.35
        assert "error" not in envelope

    def test_error_envelope(self):
        from control_plane.responses import ErrorCode, build_error_response

        envelope = build_error_response(ErrorCode.ROUTE_NOT_FOUND, "No handler", correlation_id="c1").to_dict()

        assert envelope["success"] is False
        assert envelope["error"] == {"code": "ROUTE_NOT_FOUND", "message": "No handler"}
        assert "data" not in envelope
