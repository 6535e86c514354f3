"""
Tests for text helpers.
"""

from parley.text import preview, sanitize_payload, sanitize_utf8, strip_secrets


class TestSanitize:
    def test_valid_text_unchanged(self):
        assert sanitize_utf8("It is 18°C ⚠️") == "It is 18°C ⚠️"

    def test_lone_surrogate_removed(self):
        assert sanitize_utf8("bad\ud800text") == "badtext"

    def test_payload_recurses(self):
        payload = {"a\ud800": ["x\udfff", {"b": "ok"}], "n": 1, "t": ("y",)}
        assert sanitize_payload(payload) == {"a": ["x", {"b": "ok"}], "n": 1, "t": ["y"]}


class TestStripSecrets:
    def test_literal_secret(self):
        assert "abcd1234" not in strip_secrets("failed for abcd1234", ["abcd1234"])

    def test_short_or_missing_literals_ignored(self):
        assert strip_secrets("abc", ["abc", None]) == "abc"

    def test_assignment(self):
        cleaned = strip_secrets("request failed: api_key=sk-12345 token: xyz")
        assert "sk-12345" not in cleaned
        assert "xyz" not in cleaned
        assert "api_key=[REDACTED]" in cleaned

    def test_bearer(self):
        cleaned = strip_secrets("Authorization: Bearer abc.def.ghi")
        assert "abc.def.ghi" not in cleaned

    def test_long_opaque_token(self):
        token = "A" * 45
        assert strip_secrets(f"invalid {token} given") == "invalid [REDACTED] given"

    def test_plain_text_unchanged(self):
        assert strip_secrets("Model not found") == "Model not found"


class TestPreview:
    def test_none(self):
        assert preview(None) is None

    def test_short(self):
        assert preview("18°C") == "18°C"

    def test_truncated(self):
        assert preview("x" * 150) == "x" * 100 + "..."

    def test_custom_length(self):
        assert preview("abcdef", length=3) == "abc..."

    def test_non_string(self):
        assert preview({"a": 1}) == "{'a': 1}"
