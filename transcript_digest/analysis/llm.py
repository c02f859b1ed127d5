"""
Analysis Clients
-----------------
Two client implementations with an identical async interface:

  OpenAIAnalysisClient    -- OpenAI chat models (gpt-4o, gpt-4o-mini)
  AnthropicAnalysisClient -- Anthropic Claude models

Both expose:
  analyze_unit(records)  -> Markdown analysis of one chunk
  synthesize(partials)   -> final Markdown report from ordered partials

Provider exceptions are mapped onto the LLM* error types. Only timeouts and
rate limits are retried (tenacity, exponential backoff, honouring
Retry-After); every other failure is final because the calls are not
assumed to be idempotent. The SDKs' own retry loops are disabled so the
attempt count is exactly max_retries + 1.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from langsmith import traceable
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from transcript_digest.analysis.prompts import (
    SYSTEM_PROMPT,
    build_synthesis_prompt,
    build_unit_prompt,
)
from transcript_digest.config import AnalysisConfig
from transcript_digest.errors import (
    ConfigurationError,
    LLMAuthenticationError,
    LLMError,
    LLMRateLimitError,
    LLMTimeoutError,
    is_retryable,
)
from transcript_digest.schemas import Record


class AnalysisClient(Protocol):
    """What the map and reduce stages require of the analysis capability."""

    async def analyze_unit(self, records: Sequence[Record]) -> str:
        ...

    async def synthesize(self, partials: Sequence[str]) -> str:
        ...


# ---------------------------------------------------------------------------
# Model pricing table  (input_$/M, output_$/M)
# ---------------------------------------------------------------------------

_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini":               (0.150,  0.600),
    "gpt-4o":                    (2.500, 10.000),
    "claude-haiku-4-5-20251001": (0.800,  4.000),
    "claude-sonnet-4-6":         (3.000, 15.000),
}

MAX_RETRY_AFTER_SECONDS = 60.0


def _cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Compute estimated cost in USD for a given model and token counts."""
    rates = _MODEL_PRICING.get(model, (2.500, 10.000))
    return (prompt_tokens * rates[0] + completion_tokens * rates[1]) / 1_000_000


def _retry_after(exc: Exception) -> Optional[float]:
    """Read a Retry-After header off a provider status error, if present."""
    response = getattr(exc, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    try:
        return float(value) if value else None
    except ValueError:
        return None


@dataclass
class Completion:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class UsageStats:
    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def add(self, completion: Completion) -> None:
        self.calls += 1
        self.prompt_tokens += completion.prompt_tokens
        self.completion_tokens += completion.completion_tokens


# ---------------------------------------------------------------------------
# Shared behaviour
# ---------------------------------------------------------------------------

class BaseAnalysisClient:
    """Prompt building, retry policy and usage accounting shared by providers."""

    name = "LLM"

    def __init__(
        self,
        model: str,
        topic: str = "a software project",
        temperature: float = 0.0,
        max_tokens: int = 2048,
        request_timeout: float = 30.0,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
    ) -> None:
        self.model = model
        self.topic = topic
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.usage = UsageStats()
        self._backoff = wait_exponential(
            multiplier=backoff_seconds, min=backoff_seconds, max=30
        )

    @property
    def system_prompt(self) -> str:
        return SYSTEM_PROMPT.format(topic=self.topic)

    @traceable(name="analyze_unit", run_type="llm")
    async def analyze_unit(self, records: Sequence[Record]) -> str:
        return await self._call(build_unit_prompt(records), "analyze_unit")

    @traceable(name="synthesize", run_type="llm")
    async def synthesize(self, partials: Sequence[str]) -> str:
        return await self._call(build_synthesis_prompt(partials), "synthesize")

    async def _complete(self, prompt: str, operation: str) -> Completion:
        raise NotImplementedError

    async def _call(self, prompt: str, operation: str) -> str:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                completion = await self._complete(prompt, operation)

        self.usage.add(completion)
        if not completion.text.strip():
            raise LLMError(f"{operation} returned an empty response")

        logger.debug(
            f"[{self.name}] {operation} | {self.model} | "
            f"prompt={completion.prompt_tokens} completion={completion.completion_tokens}"
        )
        return completion.text

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, LLMRateLimitError) and exc.retry_after:
            return min(exc.retry_after, MAX_RETRY_AFTER_SECONDS)
        return self._backoff(retry_state)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"[{self.name}] {exc} - attempt {retry_state.attempt_number} failed, "
            f"retrying in {sleep:.1f}s"
        )

    def usage_summary(self) -> dict:
        return {
            "provider": self.name,
            "model": self.model,
            "calls": self.usage.calls,
            "prompt_tokens": self.usage.prompt_tokens,
            "completion_tokens": self.usage.completion_tokens,
            "estimated_cost_usd": round(
                _cost_usd(self.model, self.usage.prompt_tokens, self.usage.completion_tokens), 6
            ),
        }


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class OpenAIAnalysisClient(BaseAnalysisClient):
    """Chunk analysis and synthesis using OpenAI chat models."""

    name = "OpenAI"

    def __init__(self, model: str = "gpt-4o", **kwargs) -> None:
        import openai  # lazy import keeps import graph clean

        super().__init__(model, **kwargs)
        try:
            self._client = openai.AsyncOpenAI(timeout=self.request_timeout, max_retries=0)
        except openai.OpenAIError as exc:
            raise LLMAuthenticationError(
                "Failed to initialise OpenAI client - check OPENAI_API_KEY"
            ) from exc

    async def _complete(self, prompt: str, operation: str) -> Completion:
        import openai

        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except openai.APITimeoutError as exc:
            raise LLMTimeoutError(operation, self.request_timeout) from exc
        except openai.RateLimitError as exc:
            raise LLMRateLimitError(_retry_after(exc)) from exc
        except openai.AuthenticationError as exc:
            raise LLMAuthenticationError("OpenAI authentication failed - check OPENAI_API_KEY") from exc
        except openai.OpenAIError as exc:
            raise LLMError(f"OpenAI {operation} failed: {exc}") from exc

        usage = response.usage
        return Completion(
            text=response.choices[0].message.content or "",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

class AnthropicAnalysisClient(BaseAnalysisClient):
    """
    Chunk analysis and synthesis using Anthropic Claude models.

    The Anthropic SDK passes the system prompt as a separate `system`
    parameter (not inside the messages list).
    """

    name = "Anthropic"

    def __init__(self, model: str = "claude-sonnet-4-6", **kwargs) -> None:
        from anthropic import AsyncAnthropic  # lazy import

        super().__init__(model, **kwargs)
        self._client = AsyncAnthropic(timeout=self.request_timeout, max_retries=0)

    async def _complete(self, prompt: str, operation: str) -> Completion:
        import anthropic

        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=self.system_prompt,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APITimeoutError as exc:
            raise LLMTimeoutError(operation, self.request_timeout) from exc
        except anthropic.RateLimitError as exc:
            raise LLMRateLimitError(_retry_after(exc)) from exc
        except anthropic.AuthenticationError as exc:
            raise LLMAuthenticationError("Anthropic authentication failed - check ANTHROPIC_API_KEY") from exc
        except anthropic.AnthropicError as exc:
            raise LLMError(f"Anthropic {operation} failed: {exc}") from exc

        text = "".join(block.text for block in response.content if block.type == "text")
        return Completion(
            text=text,
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
        )


def build_client(config: AnalysisConfig) -> BaseAnalysisClient:
    """Instantiate the configured provider's client."""
    kwargs = dict(
        topic=config.topic,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        request_timeout=config.request_timeout,
        max_retries=config.max_retries,
    )
    if config.provider == "openai":
        return OpenAIAnalysisClient(config.model, **kwargs)
    if config.provider == "anthropic":
        return AnthropicAnalysisClient(config.model, **kwargs)
    raise ConfigurationError("analysis.provider", f"unknown provider {config.provider!r}")
