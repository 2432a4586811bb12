"""Tests for the HTTP classifier gateway using httpx.MockTransport (no network)."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from trackq.infrastructure.secrets import StaticApiKeyProvider
from trackq.llm.client import (
    AuthError,
    ClassifierGateway,
    MalformedResponseError,
    RateLimitOrServerError,
    TransportError,
    extract_json,
    parse_categorization,
)
from trackq.storage.models import Category, Project, Role

VALID = {
    "projectName": "Dispute Resolution Flow",
    "projectRole": "Disputes",
    "workCategory": "creating",
    "confidence": 0.85,
    "reasoning": "Editing dispute code",
    "suggestedPatterns": ["DISP-42"],
}

ROLES = [Role(id=1, name="Disputes"), Role(id=2, name="Scams")]
CATEGORIES = [
    Category(id=1, name="Creating", slug="creating", description="Writing, coding"),
    Category(id=2, name="Meetings", slug="meetings", description="Calls"),
]


def envelope(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


def make_gateway(handler, api_key="sk-test"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ClassifierGateway(StaticApiKeyProvider(api_key), client=client)


def classify(gateway, projects=()):
    return gateway.classify(b"\x89PNG", "Xcode", "DISP-42 Fix crash", ROLES, CATEGORIES, list(projects))


class TestRequest:
    def test_payload_and_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=envelope(json.dumps(VALID)))

        classify(make_gateway(handler))

        assert seen["headers"]["x-api-key"] == "sk-test"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"
        content = seen["body"]["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[0]["source"]["media_type"] == "image/png"
        assert base64.b64decode(content[0]["source"]["data"]) == b"\x89PNG"
        assert content[1]["type"] == "text"
        prompt = content[1]["text"]
        assert "Xcode" in prompt and "DISP-42 Fix crash" in prompt
        assert "Disputes, Scams" in prompt
        assert "- creating: Writing, coding" in prompt
        assert "No existing projects yet" in prompt

    def test_prompt_lists_at_most_twenty_projects(self):
        seen = {}

        def handler(request):
            seen["prompt"] = json.loads(request.content)["messages"][0]["content"][1]["text"]
            return httpx.Response(200, json=envelope(json.dumps(VALID)))

        projects = [Project(id=i, name=f"Project {i:02d}") for i in range(25)]
        classify(make_gateway(handler), projects)

        assert "- Project 19" in seen["prompt"]
        assert "- Project 20" not in seen["prompt"]


class TestResponses:
    def test_fenced_json_with_prose(self):
        text = "Here you go:\n```json\n" + json.dumps(VALID) + "\n```\nThanks"
        gateway = make_gateway(lambda request: httpx.Response(200, json=envelope(text)))

        result = classify(gateway)

        assert result.project_name == "Dispute Resolution Flow"
        assert result.work_category == "creating"
        assert result.suggested_patterns == ["DISP-42"]
        assert result.key_insights is None

    def test_missing_field_is_malformed(self):
        partial = {k: v for k, v in VALID.items() if k != "reasoning"}
        gateway = make_gateway(lambda r: httpx.Response(200, json=envelope(json.dumps(partial))))
        with pytest.raises(MalformedResponseError, match="Failed to parse AI response as JSON."):
            classify(gateway)

    def test_no_text_block(self):
        gateway = make_gateway(
            lambda r: httpx.Response(200, json={"content": [{"type": "image", "source": {}}]})
        )
        with pytest.raises(MalformedResponseError, match="No text content in API response."):
            classify(gateway)

    def test_confidence_clamped(self):
        assert parse_categorization(json.dumps({**VALID, "confidence": 1.7})).confidence == 1.0
        assert parse_categorization(json.dumps({**VALID, "confidence": -2})).confidence == 0.0


class TestErrors:
    def test_missing_key_fails_at_call_time(self):
        calls = []
        gateway = make_gateway(lambda r: calls.append(r) or httpx.Response(200), api_key=None)
        with pytest.raises(AuthError, match="API key not configured"):
            classify(gateway)
        assert calls == []

    @pytest.mark.parametrize("status", [401, 403])
    def test_rejected_key(self, status):
        gateway = make_gateway(lambda r: httpx.Response(status, text="invalid x-api-key"))
        with pytest.raises(AuthError):
            classify(gateway)

    def test_server_error_carries_status_and_body(self):
        gateway = make_gateway(lambda r: httpx.Response(529, text="overloaded"))
        with pytest.raises(RateLimitOrServerError) as exc_info:
            classify(gateway)
        assert exc_info.value.status_code == 529
        assert exc_info.value.body == "overloaded"
        assert str(exc_info.value) == "API error (529): overloaded"

    def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError):
            classify(make_gateway(handler))

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransportError, match="timed out"):
            classify(make_gateway(handler))


def test_describe_returns_text():
    seen = {}

    def handler(request):
        seen["prompt"] = json.loads(request.content)["messages"][0]["content"][1]["text"]
        return httpx.Response(200, json=envelope("  Reviewing a pull request.  "))

    assert make_gateway(handler).describe(b"png") == "Reviewing a pull request."
    assert seen["prompt"]


def test_extract_json_without_braces_is_passthrough():
    assert extract_json("no json here") == "no json here"


def test_complete_sends_text_only_message():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=envelope("Mostly deep work."))

    assert make_gateway(handler).complete("Summarize the day", max_tokens=4096) == "Mostly deep work."
    assert seen["body"]["max_tokens"] == 4096
    assert seen["body"]["messages"] == [{"role": "user", "content": "Summarize the day"}]


def test_complete_defaults_to_gateway_max_tokens():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=envelope("ok"))

    gateway = make_gateway(handler)
    gateway.complete("hi")
    assert seen["body"]["max_tokens"] == gateway.max_tokens
