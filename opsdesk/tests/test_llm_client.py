"""Tests for LLMClient provider abstraction."""

import pytest
from unittest.mock import AsyncMock, MagicMock, Mock, patch

from opsdesk.common.llm_client import LLMClient


class TestLLMClientInit:
    def test_missing_anthropic_key_logs_info(self, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="opsdesk.common.llm_client"):
            client = LLMClient(provider="anthropic")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_openai_key_logs_info(self, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="opsdesk.common.llm_client"):
            client = LLMClient(provider="openai")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_google_key_logs_info(self, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="opsdesk.common.llm_client"):
            client = LLMClient(provider="google")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_unsupported_provider_logs_warning(self, caplog):
        import logging
        with caplog.at_level(logging.WARNING, logger="opsdesk.common.llm_client"):
            client = LLMClient(provider="unsupported_xyz")
        assert not client.is_available
        assert "Unsupported" in caplog.text


class TestLLMClientGenerate:
    @pytest.mark.asyncio
    async def test_generate_raises_when_unavailable(self):
        from opsdesk.common.errors import ProviderError

        client = LLMClient(provider="anthropic")
        with pytest.raises(ProviderError, match="not available"):
            await client.generate("test")

    @pytest.mark.asyncio
    async def test_openai_generate_prepends_system_and_history(self):
        completion = Mock()
        completion.choices = [Mock(message=Mock(content="  Reinstall the client.  "))]
        backend = Mock()
        backend.chat.completions.create = AsyncMock(return_value=completion)

        with patch("openai.AsyncOpenAI", return_value=backend):
            client = LLMClient(provider="openai", model="gpt-4o-mini", openai_api_key="sk-test")

        answer = await client.generate(
            "How do I fix the VPN?",
            system="Be brief",
            history=[{"role": "user", "content": "hi"}, {"role": "tool", "content": "ignored"}],
        )

        assert answer == "Reinstall the client."
        messages = backend.chat.completions.create.await_args.kwargs["messages"]
        assert messages == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "hi"},
            {"role": "user", "content": "How do I fix the VPN?"},
        ]

    @pytest.mark.asyncio
    async def test_anthropic_failure_becomes_provider_error(self):
        from opsdesk.common.errors import ProviderError

        backend = Mock()
        backend.messages.create = AsyncMock(side_effect=RuntimeError("overloaded"))
        with patch("anthropic.AsyncAnthropic", return_value=backend):
            client = LLMClient(provider="anthropic", model="claude-sonnet-4-20250514", anthropic_api_key="sk-ant")

        with pytest.raises(ProviderError, match="overloaded"):
            await client.generate("hello")


class TestLLMClientStream:
    @pytest.mark.asyncio
    async def test_openai_stream_yields_deltas(self):
        async def chunks():
            for text in ["Re", None, "install"]:
                yield Mock(choices=[Mock(delta=Mock(content=text))])

        backend = Mock()
        backend.chat.completions.create = AsyncMock(return_value=chunks())
        with patch("openai.AsyncOpenAI", return_value=backend):
            client = LLMClient(provider="openai", model="gpt-4o-mini", openai_api_key="sk-test")

        fragments = [f async for f in client.stream("How do I fix the VPN?")]
        assert fragments == ["Re", "install"]
        assert backend.chat.completions.create.await_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_anthropic_stream_uses_text_stream(self):
        async def text_stream():
            for text in ["Hola", " mundo"]:
                yield text

        response = Mock(text_stream=text_stream())
        manager = MagicMock()
        manager.__aenter__ = AsyncMock(return_value=response)
        manager.__aexit__ = AsyncMock(return_value=False)
        backend = Mock()
        backend.messages.stream = Mock(return_value=manager)

        with patch("anthropic.AsyncAnthropic", return_value=backend):
            client = LLMClient(provider="anthropic", model="claude-sonnet-4-20250514", anthropic_api_key="sk-ant")

        assert [f async for f in client.stream("hola")] == ["Hola", " mundo"]

    @pytest.mark.asyncio
    async def test_stream_failure_becomes_provider_error(self):
        from opsdesk.common.errors import ProviderError

        backend = Mock()
        backend.chat.completions.create = AsyncMock(side_effect=RuntimeError("connection reset"))
        with patch("openai.AsyncOpenAI", return_value=backend):
            client = LLMClient(provider="openai", model="gpt-4o-mini", openai_api_key="sk-test")

        with pytest.raises(ProviderError, match="connection reset"):
            async for _ in client.stream("hello"):
                pass
