"""Language-completion client contract and the Gemini REST implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from lana_advisor.errors import CompletionError

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: TokenUsage) -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens


@dataclass(slots=True)
class CompletionResult:
    text: str
    usage: TokenUsage


class CompletionClient(Protocol):
    """Black-box language completion.

    Any failure is raised as `CompletionError`.
    """

    def complete(self, system_prompt: str, user_message: str, *, model: str) -> CompletionResult: ...


class GeminiCompletionClient:
    """`generateContent` over httpx with an explicit timeout."""

    def __init__(
        self,
        *,
        api_key: str | None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        base_url: str = GEMINI_BASE_URL,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        )

    def complete(self, system_prompt: str, user_message: str, *, model: str) -> CompletionResult:
        if not self._api_key:
            raise CompletionError("GEMINI_API_KEY is not configured.")

        body = {
            "system_instruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": user_message}]}],
        }
        try:
            response = self._client.post(
                f"{self._base_url}/models/{model}:generateContent",
                params={"key": self._api_key},
                json=body,
            )
        except httpx.TimeoutException as exc:
            raise CompletionError(f"Timeout calling {model}.") from exc
        except httpx.HTTPError as exc:
            raise CompletionError(f"Transport error calling {model}: {exc}") from exc

        if not response.is_success:
            raise CompletionError(
                f"Gemini API error {response.status_code}: {response.text[:500]}",
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CompletionError(f"Non-JSON response from {model}.") from exc

        return CompletionResult(text=_first_text(payload), usage=_usage(payload))

    def close(self) -> None:
        self._client.close()


def _first_text(payload: object) -> str:
    if not isinstance(payload, dict):
        return ""
    candidates = payload.get("candidates") or []
    if not isinstance(candidates, list):
        raise CompletionError("Malformed completion response: candidates is not a list.")
    if not candidates or not isinstance(candidates[0], dict):
        return ""
    content = candidates[0].get("content") or {}
    if not isinstance(content, dict):
        raise CompletionError("Malformed completion response: content is not an object.")
    parts = content.get("parts") or []
    if not isinstance(parts, list):
        raise CompletionError("Malformed completion response: parts is not a list.")
    if not parts or not isinstance(parts[0], dict):
        return ""
    return str(parts[0].get("text") or "")


def _usage(payload: object) -> TokenUsage:
    metadata = payload.get("usageMetadata") if isinstance(payload, dict) else None
    if not isinstance(metadata, dict):
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=_token_count(metadata.get("promptTokenCount")),
        completion_tokens=_token_count(metadata.get("candidatesTokenCount")),
        total_tokens=_token_count(metadata.get("totalTokenCount")),
    )


def _token_count(value: object) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
