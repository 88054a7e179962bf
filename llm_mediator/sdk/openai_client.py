"""
OpenAI provider adapter.

Sends prompts through the OpenAI Responses API and translates SDK errors
into ProviderFailure so the mediator can classify them.
"""

import json
import time
from typing import Any, Dict, List, Optional, Union

import openai
from openai import AsyncOpenAI

from ..config.loader import MediatorConfig
from ..core.errors import ProviderFailure
from ..core.limiter import LLMResponse, Messages, Prompt, RequestMediator, RequestOptions
from ..core.token_counter import TokenUsage

_KEPT_ROLES = ("user", "assistant", "system", "developer")


def _get(source: Any, name: str) -> Any:
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def map_role(role: Any) -> str:
    """Map a chat role onto the roles the Responses API accepts.

    Tool and function output is treated as user-provided context;
    anything unknown is attributed to the assistant.
    """
    if role in ("tool", "function"):
        return "user"
    if role in _KEPT_ROLES:
        return role
    return "assistant"


def _map_content_part(part: Any) -> Optional[Dict[str, Any]]:
    part_type = _get(part, "type")
    if part_type == "text" and isinstance(_get(part, "text"), str):
        return {"type": "input_text", "text": _get(part, "text")}
    if part_type == "image_url":
        image = _get(part, "image_url")
        if isinstance(_get(image, "url"), str):
            return {
                "type": "input_image",
                "image_url": _get(image, "url"),
                "detail": _get(image, "detail") or "auto",
            }
    if part_type == "input_audio":
        audio = _get(part, "input_audio")
        if isinstance(_get(audio, "data"), str):
            return {
                "type": "input_audio",
                "input_audio": {"data": _get(audio, "data"), "format": _get(audio, "format")},
            }
    if part_type == "file" and _get(part, "file"):
        file_part = _get(part, "file")
        mapped: Dict[str, Any] = {"type": "input_file"}
        for key in ("file_id", "file_data", "filename"):
            if isinstance(_get(file_part, key), str):
                mapped[key] = _get(file_part, key)
        return mapped
    return None


def normalize_content(content: Any) -> Union[str, List[Dict[str, Any]]]:
    """Convert chat message content into Responses API input content.

    Strings pass through and None becomes an empty string. Content part
    lists are mapped part by part; when no part is recognized the text
    is kept as a single input_text part so nothing is silently dropped.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        mapped = [m for m in (_map_content_part(p) for p in content) if m is not None]
        if mapped:
            return mapped
        texts = [_get(p, "text") for p in content]
        fallback = " ".join(t for t in texts if isinstance(t, str) and t)
        return [{"type": "input_text", "text": fallback or json.dumps(content, default=str)}]
    return str(content)


def map_messages_to_input(messages: Messages) -> List[Dict[str, Any]]:
    return [
        {
            "role": map_role(_get(message, "role")),
            "content": normalize_content(_get(message, "content")),
            "type": "message",
        }
        for message in messages
    ]


def get_output_text(response: Any) -> Optional[str]:
    """Get the response text, falling back to the first output message."""
    text = _get(response, "output_text")
    if isinstance(text, str):
        return text
    for item in _get(response, "output") or []:
        if _get(item, "type") != "message":
            continue
        for part in _get(item, "content") or []:
            if _get(part, "type") in ("output_text", "text") and isinstance(_get(part, "text"), str):
                if _get(part, "text"):
                    return _get(part, "text")
    return None


def _usage_from(response: Any) -> Optional[TokenUsage]:
    usage = _get(response, "usage")
    if not usage:
        return None
    return TokenUsage(
        prompt_tokens=_get(usage, "input_tokens") or 0,
        completion_tokens=_get(usage, "output_tokens") or 0,
        reported_total=_get(usage, "total_tokens"),
    )


def _caused_by_transport_error(error: BaseException) -> bool:
    cause = error.__cause__ or error.__context__
    while cause is not None:
        if isinstance(cause, (TimeoutError, ConnectionResetError)):
            return True
        cause = cause.__cause__ or cause.__context__
    return False


class OpenAIResponsesClient:
    """Provider client backed by ``AsyncOpenAI().responses.create``."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        default_model: str = "gpt-4o-mini",
        default_temperature: float = 0.2,
        client: Optional[AsyncOpenAI] = None
    ):
        """Initialize the adapter.

        Args:
            api_key: OpenAI API key (defaults to OPENAI_API_KEY)
            default_model: Model used when the request names none
            default_temperature: Temperature used when the request sets none
            client: Preconfigured SDK client
        """
        if not default_model or not default_model.strip():
            raise ValueError("default_model is required and cannot be empty")
        self.default_model = default_model
        self.default_temperature = default_temperature
        self.client = client if client is not None else AsyncOpenAI(api_key=api_key)

    def _build_params(self, prompt: Prompt, options: RequestOptions) -> Dict[str, Any]:
        if options.messages is not None:
            api_input: Any = map_messages_to_input(options.messages)
        elif isinstance(prompt, str):
            api_input = prompt
        else:
            api_input = map_messages_to_input(prompt)

        temperature = options.temperature
        if temperature is None:
            temperature = self.default_temperature

        params: Dict[str, Any] = {
            "model": options.model or self.default_model,
            "input": api_input,
            "temperature": temperature,
        }
        if options.max_tokens is not None:
            params["max_output_tokens"] = options.max_tokens
        params.update(options.extra)
        if options.timeout_s is not None:
            params["timeout"] = options.timeout_s
        return params

    async def send(self, prompt: Prompt, options: RequestOptions) -> LLMResponse:
        """Send one request to OpenAI.

        Raises:
            ProviderFailure: On any SDK error, with status and Retry-After
                when the API answered, or timed_out for transport timeouts
        """
        params = self._build_params(prompt, options)
        try:
            response = await self.client.responses.create(**params)
        except openai.APITimeoutError as e:
            raise ProviderFailure(str(e), timed_out=True) from e
        except openai.APIStatusError as e:
            raise ProviderFailure(
                e.message,
                status=e.status_code,
                retry_after=e.response.headers.get("retry-after"),
                code=e.code,
            ) from e
        except openai.APIConnectionError as e:
            raise ProviderFailure(str(e), timed_out=_caused_by_transport_error(e)) from e

        return LLMResponse(
            id=_get(response, "id") or "",
            model=_get(response, "model") or params["model"],
            created_at=int(_get(response, "created_at") or time.time()),
            content=get_output_text(response) or "",
            usage=_usage_from(response),
            raw=response,
        )


class GuardedOpenAI:
    """OpenAI client wrapper with rate limiting, retries and budget tracking.

    Builds a RequestMediator around an OpenAIResponsesClient from one
    MediatorConfig, so each instance is one provider connection.
    """

    def __init__(
        self,
        config: Optional[MediatorConfig] = None,
        client: Optional[AsyncOpenAI] = None,
        api_key: Optional[str] = None
    ):
        """Initialize guarded OpenAI client.

        Args:
            config: Mediator settings (defaults to MediatorConfig.from_env())
            client: Preconfigured AsyncOpenAI client
            api_key: OpenAI API key when no client is given
        """
        self.config = config or MediatorConfig.from_env()
        self.provider = OpenAIResponsesClient(
            api_key=api_key,
            default_model=self.config.model,
            client=client,
        )
        self.mediator = RequestMediator.from_config(self.config, self.provider)

    async def chat(
        self,
        prompt: Prompt,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        max_attempts: Optional[int] = None,
        **extra: Any
    ) -> LLMResponse:
        """Send a prompt through the mediator.

        Raises:
            ValueError: If prompt is empty
            LLMRequestError: Normalized failure from the mediator
        """
        if not prompt:
            raise ValueError("prompt is required and cannot be empty")
        options = RequestOptions(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            max_attempts=max_attempts,
            extra=extra,
        )
        return await self.mediator.make_request(prompt, options)
