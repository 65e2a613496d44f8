"""Tests for tempest_rpg.llm: HttpBackend and parse_json_reply."""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from tempest_rpg.llm import HttpBackend, LLMError, parse_json_reply
from tempest_rpg.models import ChatMessage, ModelTier
from tempest_rpg.pipeline import is_quota_error

TIER = ModelTier(
    id="gemini-3-pro-preview",
    display_name="PRO",
    generation_config={"temperature": 1.2, "topK": 64, "topP": 0.95},
)

HISTORY = [
    ChatMessage(role="model", content="You wake in a cave."),
    ChatMessage(role="user", content="I look around."),
]


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _gemini(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _openai(text: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": text}}]}


# ---------------------------------------------------------------------------
# parse_json_reply
# ---------------------------------------------------------------------------

class TestParseJsonReply:
    def test_plain_json(self) -> None:
        assert parse_json_reply('{"hp": 5}') == {"hp": 5}

    def test_strips_markdown_fence(self) -> None:
        assert parse_json_reply('```json\n{"hp": 5}\n```') == {"hp": 5}

    def test_invalid_json_raises(self) -> None:
        with pytest.raises(LLMError, match="not valid JSON"):
            parse_json_reply("the slime is happy")


# ---------------------------------------------------------------------------
# HttpBackend: Gemini format
# ---------------------------------------------------------------------------

class TestHttpBackendGemini:
    @pytest.fixture
    def backend(self) -> HttpBackend:
        return HttpBackend(provider_url="https://llm.test")

    async def test_narrate_happy_path(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini("A goblin appears.")))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await backend.narrate("key", TIER, "system", HISTORY, "I attack")
        assert result == "A goblin appears."

    async def test_posts_to_model_url(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await backend.narrate("key", TIER, "system", [], "hi")
        url = mock_post.call_args[0][0]
        assert url == "https://llm.test/v1beta/models/gemini-3-pro-preview:generateContent"

    async def test_api_key_header(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await backend.narrate("secret", TIER, "system", [], "hi")
        headers = mock_post.call_args.kwargs["headers"]
        assert headers["x-goog-api-key"] == "secret"
        assert "Authorization" not in headers

    async def test_chat_body_shape(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await backend.narrate("key", TIER, "be the world", HISTORY, "I attack")
        body = mock_post.call_args.kwargs["json"]
        assert body["systemInstruction"] == {"parts": [{"text": "be the world"}]}
        assert [c["role"] for c in body["contents"]] == ["model", "user", "user"]
        assert body["contents"][-1]["parts"][0]["text"] == "I attack"
        assert body["generationConfig"]["topK"] == 64

    async def test_empty_narration_becomes_ellipsis(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini("")))
        with patch("httpx.AsyncClient.post", mock_post):
            assert await backend.narrate("key", TIER, "s", [], "hi") == "..."

    async def test_generate_json_sends_schema(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini('{"hp": 90}')))
        schema = {"type": "object", "properties": {"hp": {"type": "integer"}}}
        with patch("httpx.AsyncClient.post", mock_post):
            result = await backend.generate_json("key", TIER, "update", schema)
        assert result == {"hp": 90}
        cfg = mock_post.call_args.kwargs["json"]["generationConfig"]
        assert cfg["responseMimeType"] == "application/json"
        assert cfg["responseSchema"]["type"] == "OBJECT"
        assert cfg["responseSchema"]["properties"]["hp"]["type"] == "INTEGER"

    async def test_generate_json_garbage_raises(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini("not json")))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError):
                await backend.generate_json("key", TIER, "update", {"type": "object"})

    async def test_missing_candidates_raises(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"promptFeedback": {}}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await backend.narrate("key", TIER, "s", [], "hi")


# ---------------------------------------------------------------------------
# HttpBackend: OpenAI-compatible format
# ---------------------------------------------------------------------------

class TestHttpBackendOpenAI:
    @pytest.fixture
    def backend(self) -> HttpBackend:
        return HttpBackend(provider_url="http://localhost:8080/", provider_format="openai")

    async def test_happy_path(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_openai("Rain falls.")))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await backend.narrate("key", TIER, "system", HISTORY, "wait")
        assert result == "Rain falls."

    async def test_url_and_bearer(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_openai("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await backend.narrate("secret", TIER, "system", [], "hi")
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/chat/completions"
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"

    async def test_roles_mapped(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_openai("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await backend.narrate("key", TIER, "system", HISTORY, "wait")
        body = mock_post.call_args.kwargs["json"]
        assert [m["role"] for m in body["messages"]] == ["system", "assistant", "user", "user"]
        assert body["model"] == "gemini-3-pro-preview"
        assert body["temperature"] == 1.2
        assert body["top_p"] == 0.95

    async def test_generate_json_response_format(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_openai('[{"name": "Goblin"}]')))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await backend.generate_json("key", TIER, "scan", {"type": "array"})
        assert result == [{"name": "Goblin"}]
        fmt = mock_post.call_args.kwargs["json"]["response_format"]
        assert fmt["json_schema"]["schema"] == {"type": "array"}

    async def test_bad_format_raises(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": []}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await backend.narrate("key", TIER, "s", [], "hi")


# ---------------------------------------------------------------------------
# Transport errors
# ---------------------------------------------------------------------------

class TestHttpBackendErrors:
    @pytest.fixture
    def backend(self) -> HttpBackend:
        return HttpBackend(provider_url="https://llm.test", timeout=3)

    async def test_connect_error(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Cannot connect"):
                await backend.narrate("key", TIER, "s", [], "hi")

    async def test_http_429_is_a_quota_error(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=429))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="HTTP 429") as exc:
                await backend.narrate("key", TIER, "s", [], "hi")
        assert is_quota_error(exc.value)

    async def test_http_500(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=500))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="HTTP 500") as exc:
                await backend.narrate("key", TIER, "s", [], "hi")
        assert not is_quota_error(exc.value)

    async def test_timeout(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="timed out after 3s"):
                await backend.narrate("key", TIER, "s", [], "hi")

    async def test_other_transport_error(self, backend: HttpBackend) -> None:
        mock_post = AsyncMock(side_effect=httpx.RemoteProtocolError("peer closed"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="request failed"):
                await backend.narrate("key", TIER, "s", [], "hi")

    async def test_non_json_body(self, backend: HttpBackend) -> None:
        resp = _mock_response({})
        resp.json.side_effect = ValueError("Expecting value")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMError, match="non-JSON"):
                await backend.narrate("key", TIER, "s", [], "hi")
