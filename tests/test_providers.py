from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from whatsflow.config import settings
from whatsflow.services.llm import LLMError, OpenAIProvider
from whatsflow.services.whatsapp_service import send_whatsapp_message


def _client(mock_client_class, **post_kwargs):
    mock_client = MagicMock()
    mock_client.post = AsyncMock(**post_kwargs)
    mock_client_class.return_value.__aenter__.return_value = mock_client
    return mock_client


class TestOpenAIProvider:
    @pytest.mark.asyncio
    @patch("whatsflow.services.llm.openai_provider.httpx.AsyncClient")
    async def test_returns_content_and_usage(self, mock_client_class):
        body = {
            "model": "gpt-4o-mini-2024-07-18",
            "choices": [{"message": {"content": "We open at 9am."}}],
            "usage": {"prompt_tokens": 120, "completion_tokens": 8, "total_tokens": 128},
        }
        client = _client(mock_client_class, return_value=Mock(status_code=200, json=Mock(return_value=body)))
        provider = OpenAIProvider(api_key="sk-test", base_url="https://llm.internal/v1/")

        response = await provider.generate([{"role": "user", "content": "hours?"}], max_tokens=200)

        assert response.content == "We open at 9am."
        assert response.total_tokens == 128
        assert response.prompt_tokens == 120
        assert client.post.call_args.args[0] == "https://llm.internal/v1/chat/completions"
        assert client.post.call_args.kwargs["json"]["model"] == "gpt-4o-mini"
        assert client.post.call_args.kwargs["json"]["max_tokens"] == 200

    @pytest.mark.asyncio
    @patch("whatsflow.services.llm.openai_provider.httpx.AsyncClient")
    async def test_error_status_raises(self, mock_client_class):
        _client(mock_client_class, return_value=Mock(status_code=429, text="rate limited"))

        with pytest.raises(LLMError) as exc_info:
            await OpenAIProvider(api_key="sk-test").generate([{"role": "user", "content": "hi"}])

        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    @patch("whatsflow.services.llm.openai_provider.httpx.AsyncClient")
    async def test_timeout_raises(self, mock_client_class):
        _client(mock_client_class, side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(LLMError):
            await OpenAIProvider(api_key="sk-test").generate([{"role": "user", "content": "hi"}], timeout_seconds=1)


class TestSendWhatsAppMessage:
    @pytest.fixture(autouse=True)
    def _evolution(self, monkeypatch):
        monkeypatch.setattr(settings, "evolution_api_url", "https://evo.internal/")
        monkeypatch.setattr(settings, "evolution_api_key", "evo-key")

    @pytest.mark.asyncio
    @patch("whatsflow.services.whatsapp_service.httpx.AsyncClient")
    async def test_sends_text(self, mock_client_class):
        client = _client(mock_client_class, return_value=Mock(status_code=201, text="{}"))

        result = await send_whatsapp_message("shop-main", "15551234567", "Hello")

        assert result.ok
        assert client.post.call_args.args[0] == "https://evo.internal/message/sendText/shop-main"
        assert client.post.call_args.kwargs["json"] == {"number": "15551234567", "text": "Hello"}
        assert client.post.call_args.kwargs["headers"]["apikey"] == "evo-key"

    @pytest.mark.asyncio
    @patch("whatsflow.services.whatsapp_service.httpx.AsyncClient")
    async def test_http_error_is_soft_failure(self, mock_client_class):
        _client(mock_client_class, return_value=Mock(status_code=500, text="boom"))

        result = await send_whatsapp_message("shop-main", "15551234567", "Hello")

        assert not result.ok
        assert result.error_code == "http_error"
        assert result.details["status_code"] == 500
        assert result.log_context()["error_code"] == "http_error"

    @pytest.mark.asyncio
    @patch("whatsflow.services.whatsapp_service.httpx.AsyncClient")
    async def test_timeout_is_soft_failure(self, mock_client_class):
        _client(mock_client_class, side_effect=httpx.ConnectTimeout("slow"))

        result = await send_whatsapp_message("shop-main", "15551234567", "Hello")

        assert result.error_code == "timeout"

    @pytest.mark.asyncio
    async def test_not_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "evolution_api_key", "")

        result = await send_whatsapp_message("shop-main", "15551234567", "Hello")

        assert result.error_code == "not_configured"

    @pytest.mark.asyncio
    async def test_missing_text(self):
        result = await send_whatsapp_message("shop-main", "15551234567", "")
        assert result.error_code == "invalid_request"
