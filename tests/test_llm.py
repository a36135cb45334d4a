"""Tests for aps.llm: ChatModelBackend error mapping and build_backend."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from aps.errors import TransportFailure
from aps.llm import ChatModelBackend, _anthropic, _google, build_backend

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]
PARAMS = {"temperature": 0.2, "top_p": 1.0, "max_tokens": 100, "timeout": 5}


def _response(content, metadata=None):
    response = MagicMock()
    response.content = content
    response.response_metadata = metadata or {}
    return response


def _backend(ainvoke):
    llm = MagicMock()
    llm.ainvoke = ainvoke
    factory = MagicMock(return_value=llm)
    return ChatModelBackend("anthropic", "claude-test", factory), factory


class TestChatModelBackend:
    def test_returns_text_and_reported_model(self):
        backend, factory = _backend(AsyncMock(return_value=_response('{"ok": 1}', {"model_name": "claude-x-2025"})))

        generation = asyncio.run(backend.generate(MESSAGES, **PARAMS))

        assert generation.text == '{"ok": 1}'
        assert generation.model == "claude-x-2025"
        factory.assert_called_once_with(model_name="claude-test", temperature=0.2, top_p=1.0, max_tokens=100)

    def test_falls_back_to_configured_model(self):
        backend, _ = _backend(AsyncMock(return_value=_response("{}")))
        assert asyncio.run(backend.generate(MESSAGES, **PARAMS)).model == "claude-test"

    def test_flattens_content_blocks(self):
        blocks = [{"type": "text", "text": '{"a":'}, {"type": "tool_use"}, {"type": "text", "text": " 1}"}]
        backend, _ = _backend(AsyncMock(return_value=_response(blocks)))
        assert asyncio.run(backend.generate(MESSAGES, **PARAMS)).text == '{"a": 1}'

    def test_timeout_is_transport_failure(self):
        async def slow(messages):
            await asyncio.sleep(1)

        backend, _ = _backend(slow)
        with pytest.raises(TransportFailure, match="timeout"):
            asyncio.run(backend.generate(MESSAGES, **dict(PARAMS, timeout=0.01)))

    def test_connection_error_is_transport_failure(self):
        backend, _ = _backend(AsyncMock(side_effect=httpx.ConnectError("connection refused")))
        with pytest.raises(TransportFailure, match="connection refused"):
            asyncio.run(backend.generate(MESSAGES, **PARAMS))

    def test_status_code_error_is_transport_failure(self):
        class APIStatusError(Exception):
            status_code = 400

        backend, _ = _backend(AsyncMock(side_effect=APIStatusError("bad request")))
        with pytest.raises(TransportFailure):
            asyncio.run(backend.generate(MESSAGES, **PARAMS))

    def test_other_errors_propagate(self):
        backend, _ = _backend(AsyncMock(side_effect=KeyError("content")))
        with pytest.raises(KeyError):
            asyncio.run(backend.generate(MESSAGES, **PARAMS))


class TestFactories:
    @patch("aps.llm.ChatAnthropic")
    def test_anthropic_omits_default_top_p(self, MockChat):
        _anthropic(model_name="claude-test", temperature=0.2, top_p=1.0, max_tokens=100)
        MockChat.assert_called_once_with(model="claude-test", temperature=0.2, max_tokens=100, max_retries=0)

    @patch("aps.llm.ChatAnthropic")
    def test_anthropic_passes_custom_top_p(self, MockChat):
        _anthropic(model_name="claude-test", temperature=0.2, top_p=0.9, max_tokens=100)
        assert MockChat.call_args.kwargs["top_p"] == 0.9

    @patch("aps.llm.ChatGoogleGenerativeAI")
    def test_google(self, MockChat):
        _google(model_name="gemini-test", temperature=0.1, top_p=1.0, max_tokens=50)
        MockChat.assert_called_once_with(
            model="gemini-test", temperature=0.1, top_p=1.0, max_output_tokens=50, max_retries=0
        )


class TestBuildBackend:
    def test_default_provider(self):
        backend = build_backend()
        assert backend.name == "anthropic"
        assert backend.model_name == "claude-test"

    def test_google_provider(self):
        assert build_backend("google").model_name == "gemini-test"

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unsupported provider 'openai'"):
            build_backend("openai")

    def test_missing_model(self, mock_config):
        mock_config["models"] = {}
        with pytest.raises(ValueError, match="No model configured"):
            build_backend("anthropic")
