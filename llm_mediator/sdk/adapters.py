"""
Rate limiting for model calls made outside the mediator.

Wraps any model call (for example a LangChain chat model's ``ainvoke``)
so it waits for a rate slot first and has its token usage billed after.
"""

import functools
import inspect
from typing import Any, Callable, Optional

import structlog

from ..core.limiter import RequestMediator
from ..core.token_counter import extract_model_and_usage

logger = structlog.get_logger(__name__)


def with_rate_limit(
    func: Callable[..., Any],
    mediator: RequestMediator,
    model_hint: Optional[str] = None,
    record_spend: bool = True
) -> Callable[..., Any]:
    """Wrap a model call with the mediator's rate gate and usage billing.

    The wrapper does not retry and does not check the budget; the wrapped
    call keeps its own retry semantics. Usage accounting is best-effort and
    never fails the call.

    Args:
        func: Sync or async callable returning a message with usage metadata
        mediator: Mediator providing the rate window and spend ledger
        model_hint: Model name to use when the output does not report one
        record_spend: Bill usage to the ledger; when False cost is only logged

    Returns:
        Async callable with the same arguments as func
    """

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        await mediator.wait_for_rate_limit()
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        _account_usage(mediator, result, model_hint, record_spend)
        return result

    return wrapper


def _account_usage(
    mediator: RequestMediator,
    output: Any,
    model_hint: Optional[str],
    record_spend: bool
) -> None:
    try:
        model, prompt_tokens, completion_tokens, total_tokens = extract_model_and_usage(
            output, model_hint
        )
        if model and prompt_tokens is not None and completion_tokens is not None:
            if record_spend:
                cost = mediator.record_usage(model, prompt_tokens, completion_tokens)
            else:
                cost = mediator.pricing.estimate_cost_usd(model, prompt_tokens, completion_tokens)
            logger.info(
                "wrapped_call_success",
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
                cost_usd=cost,
            )
        elif any(v is not None for v in (prompt_tokens, completion_tokens, total_tokens)):
            logger.debug(
                "wrapped_call_usage_incomplete",
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
            )
    except Exception as e:
        logger.warning("usage_record_failed", error=str(e))
