"""Backend client: HTTP connection to the generative model.

The session talks to the model through the Backend protocol:

    async def narrate(credential, tier, system_instruction, history, message) -> str
    async def generate_json(credential, tier, prompt, schema) -> Any

`credential` is an opaque API key and `tier` the ModelTier being probed; the
SmartDispatcher picks both for every attempt. The model itself is a black
box: narrate returns free-form text, generate_json returns the parsed JSON
reply.

HttpBackend is the real implementation and speaks two wire formats:

    "gemini"  : POST /v1beta/models/{id}:generateContent
                Response: {"candidates": [{"content": {"parts": [{"text": ...}]}}]}
    "openai"  : POST /v1/chat/completions
                Response: {"choices": [{"message": {"content": ...}}]}

Tests use StubBackend (defined in conftest.py) instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal, Protocol, Sequence

import httpx

from tempest_rpg.models import ChatMessage, ModelTier

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol: every backend implementation must match these signatures
# ---------------------------------------------------------------------------

class Backend(Protocol):
    async def narrate(
        self,
        credential: str,
        tier: ModelTier,
        system_instruction: str,
        history: Sequence[ChatMessage],
        message: str,
    ) -> str: ...

    async def generate_json(
        self, credential: str, tier: ModelTier, prompt: str, schema: dict
    ) -> Any: ...


# ---------------------------------------------------------------------------
# LLMError: raised for all connection, protocol and parse failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the backend cannot be reached, errors, or replies garbage."""


def parse_json_reply(text: str) -> Any:
    """Parse a JSON reply, stripping markdown fences the model may add."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [line for line in lines[1:] if not line.strip().startswith("```")]
        cleaned = "\n".join(lines)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise LLMError(f"Structured reply is not valid JSON: {e}") from e


# ---------------------------------------------------------------------------
# HttpBackend: connects to a real provider
# ---------------------------------------------------------------------------

ProviderFormat = Literal["gemini", "openai"]

GEMINI_URL = "https://generativelanguage.googleapis.com"


def _gemini_schema(schema: Any) -> Any:
    """Gemini wants upper-case type names (OBJECT, STRING, ...)."""
    if isinstance(schema, dict):
        out = {}
        for key, value in schema.items():
            if key == "type" and isinstance(value, str):
                out[key] = value.upper()
            else:
                out[key] = _gemini_schema(value)
        return out
    if isinstance(schema, list):
        return [_gemini_schema(v) for v in schema]
    return schema


class HttpBackend:
    """Async HTTP client for hosted chat models.

    Args:
        provider_url:    Base URL of the provider. Defaults to the Gemini API.
        provider_format: Wire format to use. Defaults to "gemini".
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str = GEMINI_URL,
        provider_format: ProviderFormat = "gemini",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._format = provider_format
        self._timeout = timeout

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _headers(self, credential: str) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if not credential:
            return headers
        if self._format == "gemini":
            headers["x-goog-api-key"] = credential
        else:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    def _url(self, tier: ModelTier) -> str:
        if self._format == "openai":
            return f"{self._base_url}/v1/chat/completions"
        return f"{self._base_url}/v1beta/models/{tier.id}:generateContent"

    def _openai_sampling(self, tier: ModelTier) -> dict:
        cfg = tier.generation_config
        body: dict = {}
        if "temperature" in cfg:
            body["temperature"] = cfg["temperature"]
        if "topP" in cfg:
            body["top_p"] = cfg["topP"]
        return body

    def _chat_body(
        self,
        tier: ModelTier,
        system_instruction: str,
        history: Sequence[ChatMessage],
        message: str,
    ) -> dict:
        if self._format == "openai":
            messages = [{"role": "system", "content": system_instruction}]
            for m in history:
                role = "assistant" if m.role == "model" else "user"
                messages.append({"role": role, "content": m.content})
            messages.append({"role": "user", "content": message})
            return {"model": tier.id, "messages": messages, **self._openai_sampling(tier)}

        contents = [
            {"role": m.role, "parts": [{"text": m.content}]} for m in history
        ]
        contents.append({"role": "user", "parts": [{"text": message}]})
        return {
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "contents": contents,
            "generationConfig": dict(tier.generation_config),
        }

    def _json_body(self, tier: ModelTier, prompt: str, schema: dict) -> dict:
        if self._format == "openai":
            return {
                "model": tier.id,
                "messages": [{"role": "user", "content": prompt}],
                "response_format": {
                    "type": "json_schema",
                    "json_schema": {"name": "reply", "schema": schema},
                },
                **self._openai_sampling(tier),
            }
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                **tier.generation_config,
                "responseMimeType": "application/json",
                "responseSchema": _gemini_schema(schema),
            },
        }

    # ------------------------------------------------------------------
    # Response parsing
    # ------------------------------------------------------------------

    def _parse_response(self, data: dict) -> str:
        """Extract the reply text from the response body."""
        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "content" not in choices[0].get("message", {}):
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["message"]["content"] or ""

        candidates = data.get("candidates")
        if not candidates:
            raise LLMError("Unexpected response format from Gemini backend")
        parts = candidates[0].get("content", {}).get("parts")
        if not parts:
            raise LLMError("Unexpected response format from Gemini backend")
        return "".join(p.get("text", "") for p in parts)

    async def _post(self, stage: str, url: str, credential: str, body: dict) -> str:
        logger.debug("llm call stage=%s url=%s", stage, url)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers(credential))
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM backend request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        text = self._parse_response(data)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text

    # ------------------------------------------------------------------
    # Backend protocol
    # ------------------------------------------------------------------

    async def narrate(
        self,
        credential: str,
        tier: ModelTier,
        system_instruction: str,
        history: Sequence[ChatMessage],
        message: str,
    ) -> str:
        body = self._chat_body(tier, system_instruction, history, message)
        text = await self._post("narrate", self._url(tier), credential, body)
        return text or "..."

    async def generate_json(
        self, credential: str, tier: ModelTier, prompt: str, schema: dict
    ) -> Any:
        body = self._json_body(tier, prompt, schema)
        text = await self._post("generate_json", self._url(tier), credential, body)
        return parse_json_reply(text)
