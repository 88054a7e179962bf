"""
Unit tests for SDK layer.

Tests the OpenAI Responses adapter, the GuardedOpenAI wrapper and the
rate-limit wrapper for foreign model calls.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import httpx
import openai
import pytest

from llm_mediator.config.loader import MediatorConfig
from llm_mediator.core.errors import InvalidApiKeyError, ProviderFailure, RateLimitError
from llm_mediator.core.limiter import RequestMediator, RequestOptions
from llm_mediator.core.pricing import FallbackMode, PricingResolver
from llm_mediator.core.token_counter import extract_model_and_usage
from llm_mediator.sdk.adapters import with_rate_limit
from llm_mediator.sdk.openai_client import (
    GuardedOpenAI,
    OpenAIResponsesClient,
    get_output_text,
    map_messages_to_input,
    map_role,
    normalize_content,
)

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/responses")


def sdk_response(text="ok", input_tokens=100, output_tokens=50, model="gpt-4o-mini"):
    return SimpleNamespace(
        id="resp_1",
        model=model,
        created_at=1757894400,
        output_text=text,
        usage=SimpleNamespace(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        ),
    )


def mock_sdk(**create_kwargs):
    client = Mock()
    client.responses.create = AsyncMock(**create_kwargs)
    return client


class TestMessageMapping:
    """Chat messages become Responses API input items."""

    @pytest.mark.parametrize("role,expected", [
        ("user", "user"),
        ("system", "system"),
        ("developer", "developer"),
        ("assistant", "assistant"),
        ("tool", "user"),
        ("function", "user"),
        ("narrator", "assistant"),
        (None, "assistant"),
    ])
    def test_role_mapping(self, role, expected):
        """Verify chat roles map onto Responses API roles."""
        assert map_role(role) == expected

    def test_string_and_none_content(self):
        """Verify string content passes through and None becomes empty."""
        assert normalize_content("hello") == "hello"
        assert normalize_content(None) == ""

    def test_content_parts(self):
        """Verify each content part type is mapped."""
        parts = [
            {"type": "text", "text": "describe this"},
            {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}},
            {"type": "input_audio", "input_audio": {"data": "AAA", "format": "wav"}},
            {"type": "file", "file": {"file_id": "file_1", "filename": "a.pdf"}},
        ]
        assert normalize_content(parts) == [
            {"type": "input_text", "text": "describe this"},
            {"type": "input_image", "image_url": "https://example.com/a.png", "detail": "auto"},
            {"type": "input_audio", "input_audio": {"data": "AAA", "format": "wav"}},
            {"type": "input_file", "file_id": "file_1", "filename": "a.pdf"},
        ]

    def test_unknown_parts_keep_their_text(self):
        """Verify unmapped parts keep their text."""
        parts = [{"type": "refusal", "text": "cannot"}, {"type": "mystery"}]
        assert normalize_content(parts) == [{"type": "input_text", "text": "cannot"}]

    def test_unknown_parts_without_text_are_serialized(self):
        """Verify unmapped parts without text are serialized."""
        parts = [{"type": "mystery", "value": 1}]
        result = normalize_content(parts)
        assert result[0]["type"] == "input_text"
        assert '"mystery"' in result[0]["text"]

    def test_messages_to_input(self):
        """Verify messages become input items."""
        messages = [
            {"role": "system", "content": "be brief"},
            {"role": "tool", "content": "42"},
        ]
        assert map_messages_to_input(messages) == [
            {"role": "system", "content": "be brief", "type": "message"},
            {"role": "user", "content": "42", "type": "message"},
        ]


class TestOutputText:

    def test_prefers_output_text(self):
        """Verify output_text is used when present."""
        assert get_output_text(SimpleNamespace(output_text="hi", output=[])) == "hi"

    def test_falls_back_to_first_message_part(self):
        """Verify fallback to the first message output part."""
        response = {
            "output": [
                {"type": "reasoning", "content": []},
                {"type": "message", "content": [{"type": "output_text", "text": "found"}]},
            ]
        }
        assert get_output_text(response) == "found"

    def test_nothing_found(self):
        """Verify None when the response has no text."""
        assert get_output_text({"output": []}) is None


class TestOpenAIResponsesClient:
    """Test the provider adapter against a mocked SDK client."""

    def test_requires_model(self):
        """Test that a default model is required."""
        with pytest.raises(ValueError, match="default_model is required"):
            OpenAIResponsesClient(default_model="", client=Mock())

    @patch("llm_mediator.sdk.openai_client.AsyncOpenAI")
    def test_builds_sdk_client(self, mock_async_openai):
        """Test the SDK client is created with the API key."""
        OpenAIResponsesClient(api_key="sk-test")
        mock_async_openai.assert_called_once_with(api_key="sk-test")

    @pytest.mark.asyncio
    async def test_plain_prompt(self):
        """Test a plain prompt is sent as input text."""
        sdk = mock_sdk(return_value=sdk_response())
        client = OpenAIResponsesClient(client=sdk)

        response = await client.send("Hello", RequestOptions())

        sdk.responses.create.assert_awaited_once_with(
            model="gpt-4o-mini", input="Hello", temperature=0.2
        )
        assert response.content == "ok"
        assert response.model == "gpt-4o-mini"
        assert response.usage.prompt_tokens == 100
        assert response.usage.completion_tokens == 50
        assert response.usage.total_tokens == 150

    @pytest.mark.asyncio
    async def test_options_are_forwarded(self):
        """Test request options reach the SDK call."""
        sdk = mock_sdk(return_value=sdk_response())
        client = OpenAIResponsesClient(client=sdk)
        options = RequestOptions(
            model="gpt-4o",
            temperature=0.0,
            max_tokens=64,
            timeout_s=5.0,
            extra={"top_p": 0.5},
        )

        await client.send([{"role": "user", "content": "hi"}], options)

        sdk.responses.create.assert_awaited_once_with(
            model="gpt-4o",
            input=[{"role": "user", "content": "hi", "type": "message"}],
            temperature=0.0,
            max_output_tokens=64,
            top_p=0.5,
            timeout=5.0,
        )

    @pytest.mark.asyncio
    async def test_option_messages_win_over_prompt(self):
        """Test messages in options replace the prompt."""
        sdk = mock_sdk(return_value=sdk_response())
        client = OpenAIResponsesClient(client=sdk)
        options = RequestOptions(messages=[{"role": "user", "content": "from options"}])

        await client.send("ignored", options)

        sent = sdk.responses.create.await_args.kwargs["input"]
        assert sent == [{"role": "user", "content": "from options", "type": "message"}]

    @pytest.mark.asyncio
    async def test_missing_total_falls_back_to_sum(self):
        """Verify an omitted total_tokens leaves the total as prompt plus completion."""
        response = sdk_response()
        response.usage = SimpleNamespace(input_tokens=10, output_tokens=5)
        client = OpenAIResponsesClient(client=mock_sdk(return_value=response))

        usage = (await client.send("hi", RequestOptions())).usage

        assert usage.reported_total is None
        assert usage.total_tokens == 15

    @pytest.mark.asyncio
    async def test_missing_usage(self):
        """Test responses without usage report none."""
        response = sdk_response()
        response.usage = None
        client = OpenAIResponsesClient(client=mock_sdk(return_value=response))
        assert (await client.send("hi", RequestOptions())).usage is None

    @pytest.mark.asyncio
    async def test_status_error_becomes_provider_failure(self):
        """Test API status errors keep status and Retry-After."""
        error = openai.RateLimitError(
            "slow down",
            response=httpx.Response(429, headers={"retry-after": "3"}, request=REQUEST),
            body=None,
        )
        client = OpenAIResponsesClient(client=mock_sdk(side_effect=error))

        with pytest.raises(ProviderFailure) as exc_info:
            await client.send("hi", RequestOptions())

        failure = exc_info.value
        assert failure.status == 429
        assert failure.retry_after == "3"
        assert not failure.timed_out
        assert failure.__cause__ is error

    @pytest.mark.asyncio
    async def test_timeout_becomes_timed_out_failure(self):
        """Test SDK timeouts are flagged as timed out."""
        client = OpenAIResponsesClient(client=mock_sdk(side_effect=openai.APITimeoutError(request=REQUEST)))
        with pytest.raises(ProviderFailure) as exc_info:
            await client.send("hi", RequestOptions())
        assert exc_info.value.timed_out
        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_connection_reset_counts_as_timeout(self):
        """Test connection resets are flagged as timed out."""
        error = openai.APIConnectionError(request=REQUEST)
        error.__cause__ = ConnectionResetError("reset by peer")
        client = OpenAIResponsesClient(client=mock_sdk(side_effect=error))
        with pytest.raises(ProviderFailure) as exc_info:
            await client.send("hi", RequestOptions())
        assert exc_info.value.timed_out

    @pytest.mark.asyncio
    async def test_other_connection_errors_are_not_timeouts(self):
        """Test other connection errors are not flagged as timeouts."""
        client = OpenAIResponsesClient(client=mock_sdk(side_effect=openai.APIConnectionError(request=REQUEST)))
        with pytest.raises(ProviderFailure) as exc_info:
            await client.send("hi", RequestOptions())
        assert not exc_info.value.timed_out


class TestGuardedOpenAI:
    """Test the mediated OpenAI convenience client."""

    def _config(self, **overrides):
        overrides.setdefault("requests_per_minute", 0)
        return MediatorConfig(**overrides)

    @pytest.mark.asyncio
    async def test_chat_records_spend(self):
        """Test chat bills the response usage."""
        sdk = mock_sdk(return_value=sdk_response())
        guarded = GuardedOpenAI(config=self._config(), client=sdk)

        response = await guarded.chat("Hello")

        assert response.content == "ok"
        assert guarded.mediator.monthly_spend == pytest.approx(0.00018)
        sdk.responses.create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_chat_uses_configured_model(self):
        """Test chat uses the configured model and options."""
        sdk = mock_sdk(return_value=sdk_response(model="gpt-4o"))
        guarded = GuardedOpenAI(config=self._config(model="gpt-4o"), client=sdk)
        await guarded.chat("Hello", max_tokens=10, top_p=0.9)

        kwargs = sdk.responses.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["max_output_tokens"] == 10
        assert kwargs["top_p"] == 0.9

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self):
        """Test empty prompts are rejected."""
        guarded = GuardedOpenAI(config=self._config(), client=mock_sdk())
        with pytest.raises(ValueError, match="prompt is required"):
            await guarded.chat("")

    @pytest.mark.asyncio
    async def test_invalid_key_is_not_retried(self):
        """Test an invalid key fails after one call."""
        error = openai.AuthenticationError(
            "bad key", response=httpx.Response(401, request=REQUEST), body=None
        )
        sdk = mock_sdk(side_effect=error)
        guarded = GuardedOpenAI(config=self._config(), client=sdk)

        with pytest.raises(InvalidApiKeyError):
            await guarded.chat("Hello")
        assert sdk.responses.create.await_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion(self):
        """Test rate limiting surfaces after all attempts."""
        error = openai.RateLimitError(
            "slow down",
            response=httpx.Response(429, headers={"retry-after": "0"}, request=REQUEST),
            body=None,
        )
        sdk = mock_sdk(side_effect=error)
        guarded = GuardedOpenAI(config=self._config(max_attempts=2), client=sdk)

        with pytest.raises(RateLimitError) as exc_info:
            await guarded.chat("Hello")
        assert exc_info.value.retry_after_ms == 0
        assert sdk.responses.create.await_count == 2


class TestExtractModelAndUsage:
    """Usage metadata comes in several spellings."""

    def test_usage_metadata_input_output(self):
        """Verify usage_metadata with input/output spelling."""
        message = {
            "usage_metadata": {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15},
            "response_metadata": {"model_name": "gpt-4o"},
        }
        assert extract_model_and_usage(message) == ("gpt-4o", 10, 5, 15)

    def test_nested_token_usage(self):
        """Verify token_usage nested in response_metadata."""
        message = SimpleNamespace(
            usage_metadata=None,
            response_metadata={"token_usage": {"prompt_tokens": 7, "completion_tokens": 3}, "model": "gpt-4.1"},
        )
        assert extract_model_and_usage(message) == ("gpt-4.1", 7, 3, None)

    def test_fallback_model(self):
        """Verify the fallback model is used when none is reported."""
        message = {"usage_metadata": {"prompt_tokens": 1, "completion_tokens": 2}}
        assert extract_model_and_usage(message, "gpt-4o-mini")[0] == "gpt-4o-mini"

    def test_nothing_reported(self):
        """Verify output without metadata reports nothing."""
        assert extract_model_and_usage("plain string") == (None, None, None, None)


class TestWithRateLimit:
    """Test the wrapper for foreign model calls."""

    def _mediator(self, clock, provider, **kwargs):
        kwargs.setdefault("requests_per_minute", 0)
        return RequestMediator(provider, clock=clock.time, sleep=clock.sleep, **kwargs)

    @staticmethod
    def _message(model="gpt-4o-mini", input_tokens=1000, output_tokens=1000):
        return {
            "content": "ok",
            "usage_metadata": {"input_tokens": input_tokens, "output_tokens": output_tokens},
            "response_metadata": {"model_name": model},
        }

    @pytest.mark.asyncio
    async def test_async_call_is_billed(self, clock, provider_factory):
        """Test usage of an async call is billed."""
        mediator = self._mediator(clock, provider_factory(None))

        async def invoke(prompt):
            return self._message()

        wrapped = with_rate_limit(invoke, mediator)
        result = await wrapped("hi")

        assert result["content"] == "ok"
        assert mediator.monthly_spend == pytest.approx(0.003)

    @pytest.mark.asyncio
    async def test_sync_call_is_supported(self, clock, provider_factory):
        """Test sync callables are wrapped too."""
        mediator = self._mediator(clock, provider_factory(None))
        wrapped = with_rate_limit(lambda: self._message(), mediator)
        await wrapped()
        assert mediator.monthly_spend == pytest.approx(0.003)

    @pytest.mark.asyncio
    async def test_waits_for_rate_slot(self, clock, provider_factory):
        """Test wrapped calls share the rate window."""
        mediator = self._mediator(clock, provider_factory(None), requests_per_minute=1)
        wrapped = with_rate_limit(lambda: self._message(), mediator)
        await wrapped()
        await wrapped()
        assert clock.sleeps == [pytest.approx(60.0)]

    @pytest.mark.asyncio
    async def test_log_only_mode_does_not_bill(self, clock, provider_factory):
        """Test record_spend=False only logs the cost."""
        mediator = self._mediator(clock, provider_factory(None))
        wrapped = with_rate_limit(lambda: self._message(), mediator, record_spend=False)
        await wrapped()
        assert mediator.monthly_spend == 0.0

    @pytest.mark.asyncio
    async def test_model_hint_used_when_metadata_has_none(self, clock, provider_factory):
        """Test the model hint prices calls without a model name."""
        mediator = self._mediator(clock, provider_factory(None))
        message = {"usage_metadata": {"input_tokens": 1000, "output_tokens": 1000}}
        wrapped = with_rate_limit(lambda: message, mediator, model_hint="gpt-4o-mini")
        await wrapped()
        assert mediator.monthly_spend == pytest.approx(0.003)

    @pytest.mark.asyncio
    async def test_incomplete_usage_is_not_billed(self, clock, provider_factory):
        """Test partial usage is not billed."""
        mediator = self._mediator(clock, provider_factory(None))
        message = {"usage_metadata": {"input_tokens": 10}, "response_metadata": {"model": "gpt-4o"}}
        result = await with_rate_limit(lambda: message, mediator)()
        assert result is message
        assert mediator.monthly_spend == 0.0

    @pytest.mark.asyncio
    async def test_accounting_failure_never_breaks_the_call(self, clock, provider_factory):
        """Test accounting errors never fail the wrapped call."""
        mediator = self._mediator(
            clock, provider_factory(None), pricing=PricingResolver(fallback=FallbackMode.ERROR)
        )
        wrapped = with_rate_limit(lambda: self._message(model="mystery"), mediator, record_spend=False)
        result = await wrapped()
        assert result["content"] == "ok"
        assert mediator.monthly_spend == 0.0

    @pytest.mark.asyncio
    async def test_call_errors_propagate(self, clock, provider_factory):
        """Test errors from the wrapped call propagate."""
        mediator = self._mediator(clock, provider_factory(None))

        async def failing():
            raise RuntimeError("model exploded")

        with pytest.raises(RuntimeError, match="model exploded"):
            await with_rate_limit(failing, mediator)()
