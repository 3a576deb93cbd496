#!/usr/bin/env python3
"""
Tests for route-based provider detection.
"""

from toolchat.chat.context_detector import ContextDetector


def _detector() -> ContextDetector:
    detector = ContextDetector()
    detector.register_provider("retouchr", "/app/studio/retouchr", r"/app/studio/retouchr\?id=([^&]+)")
    detector.register_provider("docs", lambda route: route.startswith("/docs"))
    return detector


def test_substring_match_extracts_design_id():
    result = _detector().detect_context("/app/studio/retouchr?id=abc123&tab=layers")

    assert result.provider == "retouchr"
    assert result.context == {"route": "/app/studio/retouchr?id=abc123&tab=layers", "design_id": "abc123"}
    print("✅ Route detection test passed")


def test_match_without_id():
    result = _detector().detect_context("/app/studio/retouchr")

    assert result.provider == "retouchr"
    assert "design_id" not in result.context


def test_callable_matcher():
    detector = _detector()

    assert detector.detect_context("/docs/getting-started").provider == "docs"
    assert detector.has_provider("/docs")


def test_no_match():
    detector = _detector()

    result = detector.detect_context("/settings")

    assert result.provider is None
    assert result.context == {}
    assert not detector.has_provider("/settings")
    assert detector.get_provider_ids() == ["retouchr", "docs"]
