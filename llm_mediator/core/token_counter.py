"""
Token counting and usage tracking.

Normalizes token usage reported by providers and framework messages.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the provider.
    """
    prompt_tokens: int
    completion_tokens: int
    reported_total: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        """Total tokens used, preferring the provider-reported figure."""
        if self.reported_total is not None:
            return self.reported_total
        return self.prompt_tokens + self.completion_tokens


ZERO_USAGE = TokenUsage(prompt_tokens=0, completion_tokens=0, reported_total=0)


def _field(source: Any, name: str) -> Any:
    """Read a field from a mapping or an object, returning None if absent."""
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(name)
    return getattr(source, name, None)


def _first_int(*values: Any) -> Optional[int]:
    for value in values:
        # bool is an int subclass; never a token count
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


def extract_model_and_usage(
    output: Any,
    fallback_model: Optional[str] = None
) -> Tuple[Optional[str], Optional[int], Optional[int], Optional[int]]:
    """Pull model name and token counts out of a framework message.

    Looks at ``usage_metadata`` first, then ``response_metadata.token_usage``
    or ``response_metadata.usage``. Both ``prompt_tokens``/``completion_tokens``
    and ``input_tokens``/``output_tokens`` spellings are accepted.

    Args:
        output: Message object or mapping returned by a model call
        fallback_model: Model name to report when metadata has none

    Returns:
        Tuple of (model, prompt_tokens, completion_tokens, total_tokens);
        any element may be None when not reported
    """
    direct = _field(output, "usage_metadata") or {}
    metadata = _field(output, "response_metadata") or {}
    nested = _field(metadata, "token_usage") or _field(metadata, "usage") or {}

    prompt_tokens = _first_int(
        _field(direct, "prompt_tokens"),
        _field(direct, "input_tokens"),
        _field(nested, "prompt_tokens"),
        _field(nested, "input_tokens"),
    )
    completion_tokens = _first_int(
        _field(direct, "completion_tokens"),
        _field(direct, "output_tokens"),
        _field(nested, "completion_tokens"),
        _field(nested, "output_tokens"),
    )
    total_tokens = _first_int(
        _field(direct, "total_tokens"),
        _field(nested, "total_tokens"),
    )
    model = (
        _field(metadata, "model")
        or _field(metadata, "model_name")
        or _field(metadata, "modelId")
        or fallback_model
    )
    return model, prompt_tokens, completion_tokens, total_tokens
