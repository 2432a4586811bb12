"""
Classifier Gateway - remote screenshot categorization over HTTP.

Sends one request (base64 PNG + prompt text, or prompt text alone for period
analysis) to the Anthropic Messages API and validates the JSON object the
model returns. The gateway never retries and
never touches storage; retry and fallback policy belong to the caller.

Errors:
- AuthError: no API key configured, or the key was rejected (401/403)
- TransportError: network failure or timeout
- RateLimitOrServerError: any other non-200 response (status + raw body kept)
- MalformedResponseError: envelope without text, unparseable or schema-violating JSON
"""

from __future__ import annotations

import base64
import json
import re
from collections.abc import Sequence
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from trackq.config import (
    CLASSIFIER_API_URL,
    CLASSIFIER_API_VERSION,
    CLASSIFIER_MAX_TOKENS,
    CLASSIFIER_MODEL,
    LLM_TIMEOUT_SECONDS,
)
from trackq.infrastructure.secrets import ApiKeyProvider
from trackq.llm.prompts import PromptLoader
from trackq.observability.logging import get_logger
from trackq.observability.telemetry import counter, time_block
from trackq.storage.models import Category, Project, Role

logger = get_logger(__name__)

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


class ClassifierError(RuntimeError):
    """Base class for classifier gateway failures."""


class AuthError(ClassifierError):
    """Raised when no usable API key is available."""


class TransportError(ClassifierError):
    """Raised on network failures and timeouts."""


class RateLimitOrServerError(ClassifierError):
    """Raised for non-200 responses other than auth failures."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"API error ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


class MalformedResponseError(ClassifierError, ValueError):
    """Raised when the response cannot be turned into a Categorization."""


class Categorization(BaseModel):
    """Structured categorization returned by the remote classifier."""

    model_config = ConfigDict(populate_by_name=True)

    project_name: str = Field(alias="projectName", min_length=1)
    project_role: str = Field(alias="projectRole")
    work_category: str = Field(alias="workCategory")
    confidence: float
    reasoning: str
    suggested_patterns: list[str] = Field(alias="suggestedPatterns")
    key_insights: list[str] | None = Field(default=None, alias="keyInsights")
    summary: str | None = None

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return min(1.0, max(0.0, v))

    @field_validator("project_name", "project_role", "work_category")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


def extract_json(text: str) -> str:
    """Strip markdown fences and surrounding prose, keeping the outermost {...}."""
    cleaned = _FENCE.sub("", text).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        return cleaned[start : end + 1]
    return cleaned


def parse_categorization(text: str) -> Categorization:
    """
    Parse model output into a Categorization.

    Raises:
        MalformedResponseError: If the text is not a JSON object with the required fields
    """
    try:
        data = json.loads(extract_json(text))
    except ValueError as e:
        raise MalformedResponseError("Failed to parse AI response as JSON.") from e
    if not isinstance(data, dict):
        raise MalformedResponseError("Failed to parse AI response as JSON.")
    try:
        return Categorization.model_validate(data)
    except ValidationError as e:
        logger.warning("Classifier response failed validation: %d errors", e.error_count())
        raise MalformedResponseError("Failed to parse AI response as JSON.") from e


def first_text_block(envelope: Any) -> str:
    """Return the first ``text`` entry of a Messages API response envelope."""
    content = envelope.get("content") if isinstance(envelope, dict) else None
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    return text
    raise MalformedResponseError("No text content in API response.")


class ClassifierGateway:
    """
    HTTP client for the remote classifier.

    ``client`` may be injected (tests pass an ``httpx.Client`` built on
    ``httpx.MockTransport``); otherwise one is created and owned here.
    """

    def __init__(
        self,
        api_key_provider: ApiKeyProvider,
        client: httpx.Client | None = None,
        api_url: str = CLASSIFIER_API_URL,
        model: str = CLASSIFIER_MODEL,
        max_tokens: int = CLASSIFIER_MAX_TOKENS,
        timeout: float = LLM_TIMEOUT_SECONDS,
        prompt_loader: PromptLoader | None = None,
    ):
        self.api_key_provider = api_key_provider
        self.api_url = api_url
        self.model = model
        self.max_tokens = max_tokens
        self.prompts = prompt_loader or PromptLoader()
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def classify(
        self,
        image: bytes,
        app_name: str | None,
        window_title: str | None,
        roles: Sequence[Role],
        categories: Sequence[Category],
        known_projects: Sequence[Project],
    ) -> Categorization:
        """
        Categorize one screenshot against the current taxonomy.

        Raises:
            AuthError, TransportError, RateLimitOrServerError, MalformedResponseError
        """
        prompt = self.prompts.get_categorization_prompt(
            app_name, window_title, roles, categories, known_projects
        )
        text = self._send(self.build_payload(prompt, image))
        categorization = parse_categorization(text)
        counter("classifier.categorized")
        return categorization

    def describe(self, image: bytes) -> str:
        """Free-text summary of a screenshot; used for connectivity checks only."""
        return self._send(self.build_payload(self.prompts.get_description_prompt(), image)).strip()

    def complete(self, prompt: str, max_tokens: int | None = None) -> str:
        """
        Text-only request; returns the first text block of the response.

        Raises:
            AuthError, TransportError, RateLimitOrServerError, MalformedResponseError
        """
        return self._send(self.build_payload(prompt, max_tokens=max_tokens))

    def build_payload(
        self, prompt: str, image: bytes | None = None, max_tokens: int | None = None
    ) -> dict[str, Any]:
        content: str | list[dict[str, Any]] = prompt
        if image is not None:
            content = [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": "image/png",
                        "data": base64.b64encode(image).decode("ascii"),
                    },
                },
                {"type": "text", "text": prompt},
            ]
        return {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": [{"role": "user", "content": content}],
        }

    def _send(self, payload: dict[str, Any]) -> str:
        api_key = self.api_key_provider.get_api_key()
        if not api_key:
            counter("classifier.error.auth")
            raise AuthError("API key not configured. Please add your Anthropic API key in Settings.")

        headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": CLASSIFIER_API_VERSION,
        }

        counter("classifier.request")
        try:
            with time_block("classifier.latency"):
                response = self._client.post(
                    self.api_url, headers=headers, json=payload
                )
        except httpx.TimeoutException as e:
            counter("classifier.error.timeout")
            logger.warning("Classifier request timed out: %s", e)
            raise TransportError(f"Classifier request timed out: {e}") from e
        except httpx.HTTPError as e:
            counter("classifier.error.transport")
            logger.warning("Classifier request failed: %s", e)
            raise TransportError(f"Classifier request failed: {e}") from e

        if response.status_code != 200:
            counter(f"classifier.error.status_{response.status_code}")
            logger.warning("Classifier returned HTTP %d", response.status_code)
            if response.status_code in (401, 403):
                raise AuthError(f"API error ({response.status_code}): {response.text}")
            raise RateLimitOrServerError(response.status_code, response.text)

        try:
            envelope = response.json()
        except ValueError as e:
            counter("classifier.error.malformed")
            raise MalformedResponseError("Failed to parse AI response as JSON.") from e
        return first_text_block(envelope)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
