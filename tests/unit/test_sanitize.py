"""Unit tests for chat text sanitization and envelope payload cleanup."""

from __future__ import annotations

import pytest

from stream_aggregator.events.sanitize import has_injection, sanitize_envelope_data, sanitize_text


class TestSanitizeText:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("hi <script>alert(1)</script>there ${x}", "hi there"),
            ('<a href="javascript:alert(1)">x</a>', '<a href="alert(1)">x</a>'),
            ('<img onerror="x">', '<img "x">'),
            ("hello {{user.name}} world", "hello  world"),
            ("  padded  ", "padded"),
        ],
    )
    def test_injection_removed(self, raw, expected) -> None:
        assert sanitize_text(raw) == expected

    @pytest.mark.parametrize(
        "text",
        ["Ünïcödé ✓", "日本語のチャット", "emoji 🎉🔥", "مرحبا", "Zero​width"],
    )
    def test_non_ascii_passes_through(self, text) -> None:
        assert sanitize_text(text) == text

    @pytest.mark.parametrize("value", [None, 42, ["x"], {"text": "x"}])
    def test_non_string_yields_empty(self, value) -> None:
        assert sanitize_text(value) == ""

    def test_has_injection(self) -> None:
        assert has_injection("${process.env}") is True
        assert has_injection("plain text, nothing odd") is False


class TestSanitizeEnvelopeData:
    def test_matching_keys_dropped(self) -> None:
        data = {"type": "platform:gift", "platform": "tiktok", "amount": 5}

        assert sanitize_envelope_data("tiktok", "platform:gift", data) == {"amount": 5}

    def test_conflicting_keys_preserved_under_source(self) -> None:
        data = {"type": "chat", "platform": "tiktok-live", "text": "hi"}

        result = sanitize_envelope_data("tiktok", "platform:chat-message", data)

        assert result == {"text": "hi", "source_type": "chat", "source_platform": "tiktok-live"}

    def test_non_mapping_unchanged(self) -> None:
        assert sanitize_envelope_data("twitch", "platform:gift", "raw") == "raw"
