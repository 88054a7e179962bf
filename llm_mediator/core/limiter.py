"""
Rate and budget mediation for LLM requests.

Every request passes through three gates, in order:
1. Budget - blocks all calls once the monthly spend reaches the budget
2. Rate - waits until the trailing 60 second window has a free slot
3. Retry - retries transient failures with provider-aware backoff

Spend is recorded only after a successful call.
"""

import asyncio
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

import structlog

from .classifier import classify, normalize
from .errors import BudgetExceededError
from .pricing import PricingResolver
from .token_counter import ZERO_USAGE, TokenUsage
from llm_mediator.storage.models import month_key_from_timestamp
from llm_mediator.storage.spend_store import InMemorySpendStore, SpendStore

logger = structlog.get_logger(__name__)

WINDOW_MS = 60_000
PROMPT_PREVIEW_CHARS = 120

Messages = Sequence[Dict[str, Any]]
Prompt = Union[str, Messages]


@dataclass(frozen=True)
class RequestOptions:
    """Per-call request settings.

    max_attempts counts the initial try, so 3 means up to two retries.
    When unset the mediator default applies.
    """
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout_s: Optional[float] = None
    messages: Optional[Messages] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    max_attempts: Optional[int] = None


@dataclass(frozen=True)
class LLMResponse:
    """Provider-neutral response returned by a client adapter."""
    id: str
    model: str
    created_at: int
    content: str
    usage: Optional[TokenUsage] = None
    raw: Any = None


class ProviderClient(Protocol):
    """The one operation the mediator needs from a provider."""

    async def send(self, prompt: Prompt, options: RequestOptions) -> LLMResponse:
        ...


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with additive jitter and an upper cap."""
    base_ms: int = 500
    jitter_ms: int = 100
    cap_ms: int = 15_000

    def delay_ms(self, attempt: int, rng: Callable[[], float] = random.random) -> int:
        """Delay before the retry that follows the given (1-based) attempt."""
        base = self.base_ms * (2 ** (attempt - 1))
        jitter = int(rng() * self.jitter_ms)
        return min(self.cap_ms, base + jitter)


def _prompt_preview(prompt: Prompt) -> str:
    if isinstance(prompt, str):
        return prompt[:PROMPT_PREVIEW_CHARS]
    texts = [m.get("content") for m in prompt if isinstance(m, dict)]
    return " ".join(t for t in texts if isinstance(t, str))[:PROMPT_PREVIEW_CHARS]


class RequestMediator:
    """Gatekeeper between application code and one provider connection.

    Owns a rate window and a monthly spend ledger. Both are shared by all
    concurrent callers of this instance and guarded by locks that are never
    held across an ``await``.
    """

    def __init__(
        self,
        client: ProviderClient,
        requests_per_minute: int = 50,
        monthly_budget: float = 100.0,
        max_attempts: int = 3,
        spend_store: Optional[SpendStore] = None,
        pricing: Optional[PricingResolver] = None,
        backoff: Optional[BackoffPolicy] = None,
        default_model: str = "gpt-4o-mini",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize the mediator.

        Args:
            client: Provider adapter used to send requests
            requests_per_minute: Admission quota; zero or less disables it
            monthly_budget: USD ceiling for the current UTC month
            max_attempts: Default total attempts per request
            spend_store: Where monthly spend is persisted (in-memory if omitted)
            pricing: Cost resolver (default table, mini fallback if omitted)
            backoff: Retry backoff when the provider gives no Retry-After
            default_model: Model reported when neither options nor response name one
            clock: Returns the current time in epoch seconds
            sleep: Coroutine function used for every wait
            rng: Source of jitter in [0, 1)
        """
        self.client = client
        self.requests_per_minute = requests_per_minute
        self.monthly_budget = monthly_budget
        self.max_attempts = max_attempts
        self.pricing = pricing or PricingResolver()
        self.backoff = backoff or BackoffPolicy()
        self.default_model = default_model

        self._store = spend_store if spend_store is not None else InMemorySpendStore()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self._window: List[int] = []
        self._waiting = 0
        self._window_lock = threading.Lock()

        self._ledger_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._ledger_version = 0
        self._persisted_versions: Dict[str, int] = {}
        self._month_key = month_key_from_timestamp(self._clock())
        self._monthly_spend = self._load_spend(self._month_key)

    @classmethod
    def from_config(cls, config, client: ProviderClient, **overrides) -> "RequestMediator":
        """Build a mediator from a MediatorConfig.

        Keyword overrides are passed straight to the constructor.
        """
        from llm_mediator.config.loader import build_spend_store

        kwargs = dict(
            requests_per_minute=config.requests_per_minute,
            monthly_budget=config.monthly_budget,
            max_attempts=config.max_attempts,
            spend_store=build_spend_store(config),
            pricing=PricingResolver(fallback=config.pricing_fallback),
            backoff=BackoffPolicy(
                base_ms=config.backoff_base_ms,
                jitter_ms=config.backoff_jitter_ms,
                cap_ms=config.backoff_cap_ms,
            ),
            default_model=config.model,
        )
        kwargs.update(overrides)
        return cls(client, **kwargs)

    @property
    def monthly_spend(self) -> float:
        with self._ledger_lock:
            self._rotate_month_if_needed()
            return self._monthly_spend

    @property
    def current_month_key(self) -> str:
        with self._ledger_lock:
            self._rotate_month_if_needed()
            return self._month_key

    @property
    def remaining_budget(self) -> float:
        return max(0.0, round(self.monthly_budget - self.monthly_spend, 6))

    @property
    def queue_size(self) -> int:
        """Number of callers currently waiting for a rate slot."""
        with self._window_lock:
            return self._waiting

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _load_spend(self, key: str) -> float:
        loaded = self._store.load(key)
        if isinstance(loaded, (int, float)) and loaded == loaded:
            return float(loaded)
        return 0.0

    def _rotate_month_if_needed(self) -> None:
        # Caller holds _ledger_lock
        key = month_key_from_timestamp(self._clock())
        if key != self._month_key:
            self._month_key = key
            self._monthly_spend = self._load_spend(key)

    def _check_budget(self) -> None:
        with self._ledger_lock:
            self._rotate_month_if_needed()
            spend = self._monthly_spend
        if spend >= self.monthly_budget:
            logger.error(
                "budget_exceeded",
                monthly_spend=spend,
                monthly_budget=self.monthly_budget,
            )
            raise BudgetExceededError()

    def _add_spend(self, delta_usd: float) -> Tuple[str, float, int]:
        with self._ledger_lock:
            self._rotate_month_if_needed()
            self._monthly_spend = round(self._monthly_spend + delta_usd, 6)
            self._ledger_version += 1
            return self._month_key, self._monthly_spend, self._ledger_version

    def _persist_spend(self, key: str, spend: float, version: int) -> None:
        """Write one ledger snapshot, skipping it if a newer one was written."""
        with self._persist_lock:
            if version <= self._persisted_versions.get(key, 0):
                return
            try:
                self._store.save(key, spend)
            except Exception as e:
                # In-memory spend stays authoritative for this process
                logger.warning("spend_persist_failed", month=key, error=str(e))
                return
            self._persisted_versions[key] = version

    def _record_spend(self, delta_usd: float) -> float:
        key, spend, version = self._add_spend(delta_usd)
        self._persist_spend(key, spend, version)
        return spend

    async def _record_spend_async(self, delta_usd: float) -> float:
        key, spend, version = self._add_spend(delta_usd)
        # File writes block; keep them off the event loop
        await asyncio.to_thread(self._persist_spend, key, spend, version)
        return spend

    def record_usage(self, model: str, prompt_tokens, completion_tokens) -> Optional[float]:
        """Bill a call that was made outside make_request.

        Pricing errors are logged and nothing is billed.

        Returns:
            The cost that was added to the monthly spend, or None
        """
        try:
            cost = self.pricing.estimate_cost_usd(model, prompt_tokens, completion_tokens)
        except ValueError as e:
            logger.warning("usage_record_failed", model=model, error=str(e))
            return None
        self._record_spend(cost)
        return cost

    async def wait_for_rate_limit(self) -> None:
        """Block until the trailing minute has room for one more request.

        Sleeps exactly until the oldest tracked request leaves the window,
        then checks again. Admission is not FIFO.
        """
        while True:
            if self.requests_per_minute <= 0:
                return

            with self._window_lock:
                now = self._now_ms()
                self._window = [t for t in self._window if now - t < WINDOW_MS]
                if len(self._window) < self.requests_per_minute:
                    self._window.append(now)
                    return
                wait_ms = max(0, WINDOW_MS - (now - self._window[0]))
                self._waiting += 1
                queue_size = self._waiting

            logger.debug("rate_limit_wait", wait_ms=wait_ms, queue_size=queue_size)
            try:
                await self._sleep(wait_ms / 1000)
            finally:
                with self._window_lock:
                    self._waiting -= 1

    async def make_request(
        self,
        prompt: Prompt,
        options: Optional[RequestOptions] = None
    ) -> LLMResponse:
        """Send a prompt through the budget gate, rate gate and retry loop.

        Args:
            prompt: Plain prompt text or a list of chat messages
            options: Per-call settings

        Returns:
            The provider response

        Raises:
            BudgetExceededError: If this month's spend has reached the budget
            LLMRequestError: Normalized form of the last failure
        """
        options = options or RequestOptions()
        self._check_budget()
        await self.wait_for_rate_limit()
        return await self._retry_with_backoff(prompt, options)

    async def _retry_with_backoff(self, prompt: Prompt, options: RequestOptions) -> LLMResponse:
        attempts = options.max_attempts if options.max_attempts is not None else self.max_attempts
        max_attempts = max(1, attempts)
        last_failure: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            started = self._clock()
            try:
                response = await self._perform_request(prompt, options)
            except Exception as e:
                last_failure = e
                decision = classify(e, now=self._clock())
                logger.warning(
                    "request_failure",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    reason=decision.reason.value,
                    error_name=type(e).__name__,
                    error_message=str(e),
                    retry_after_ms=decision.retry_after_ms,
                )
                if not decision.should_retry or attempt >= max_attempts:
                    break
                if decision.retry_after_ms is not None:
                    # Provider pacing is authoritative: no cap, no jitter
                    delay_ms = decision.retry_after_ms
                else:
                    delay_ms = self.backoff.delay_ms(attempt, self._rng)
                await self._sleep(delay_ms / 1000)
                continue

            elapsed_ms = int((self._clock() - started) * 1000)
            usage = response.usage or ZERO_USAGE
            model = response.model or options.model or self.default_model
            cost = self.pricing.estimate_cost_usd(
                model, usage.prompt_tokens, usage.completion_tokens
            )
            monthly_spend = await self._record_spend_async(cost)
            logger.info(
                "request_success",
                attempt=attempt,
                elapsed_ms=elapsed_ms,
                model=model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                cost_usd=cost,
                monthly_spend=monthly_spend,
                monthly_budget=self.monthly_budget,
            )
            return response

        raise normalize(last_failure, now=self._clock()) from last_failure

    async def _perform_request(self, prompt: Prompt, options: RequestOptions) -> LLMResponse:
        logger.debug(
            "dispatch_request",
            model=options.model or self.default_model,
            prompt_preview=_prompt_preview(options.messages or prompt),
            temperature=options.temperature,
            max_tokens=options.max_tokens,
        )
        return await self.client.send(prompt, options)
