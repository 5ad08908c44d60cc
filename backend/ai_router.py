"""
Market Intel - AI Provider Gateway
==================================

Sends prompts to the user's own provider accounts (OpenAI, Anthropic, Gemini,
Perplexity) and normalizes replies.

Features:
- One call per generate(); provider errors re-raised as ProviderError
- JSON replies: fences stripped, parse failures raised as ProviderResponseError
- Priority failover across the providers a user has keys for, each attempt
  guarded by a token-bucket rate limit, a circuit breaker and jittered retries
- Daily budget enforcement and cost tracking per request
- Prometheus and Langfuse reporting

Provider priority (lower is tried first):
    openai 1, anthropic 2, gemini 3, perplexity 4
"""

import os
import json
import logging
import asyncio
import hashlib
import time
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field
from datetime import datetime, date
from enum import Enum

import tiktoken

from constants import ANALYSIS_PROVIDERS
from input_sanitizer import sanitize_error
from metrics import track_ai_call
from observability import log_ai_cost
from prompts import parse_json_response, PromptResponseError
from resilience import (
    ensure_rate_limit, get_circuit_breaker, retry_with_jitter,
    RateLimitExceededError, CircuitOpenError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# MODEL CONFIGURATION
# =============================================================================

class TaskType(str, Enum):
    """Task types, used for cost reporting."""
    ANALYSIS = "analysis"          # Per-competitor analysis
    INSIGHTS = "insights"          # Business insights over consolidated results
    VALIDATION = "validation"      # Cheap probe calls


@dataclass
class ModelConfig:
    """Configuration for an AI model."""
    name: str                           # Model identifier
    provider: str                       # openai, anthropic, gemini, perplexity
    input_cost_per_1m: float           # Cost per 1M input tokens
    output_cost_per_1m: float          # Cost per 1M output tokens
    context_window: int                 # Maximum context size
    best_for: List[TaskType]           # Task types this model is used for
    max_output_tokens: int = 4096
    api_model_id: Optional[str] = None  # Actual API model ID if different


MODELS: Dict[str, ModelConfig] = {
    "gpt-4o": ModelConfig(
        name="gpt-4o",
        provider="openai",
        input_cost_per_1m=2.50,
        output_cost_per_1m=10.00,
        context_window=128_000,
        best_for=[TaskType.ANALYSIS, TaskType.INSIGHTS],
        api_model_id="gpt-4o"
    ),
    "claude-sonnet-4.5": ModelConfig(
        name="claude-sonnet-4.5",
        provider="anthropic",
        input_cost_per_1m=3.00,
        output_cost_per_1m=15.00,
        context_window=200_000,
        best_for=[TaskType.ANALYSIS, TaskType.INSIGHTS],
        max_output_tokens=8192,
        api_model_id="claude-sonnet-4-5-20250929"
    ),
    "gemini-2.5-flash": ModelConfig(
        name="gemini-2.5-flash",
        provider="gemini",
        input_cost_per_1m=0.30,
        output_cost_per_1m=2.50,
        context_window=1_000_000,
        best_for=[TaskType.ANALYSIS, TaskType.INSIGHTS],
        max_output_tokens=8192,
        api_model_id="gemini-2.5-flash"
    ),
    "sonar-pro": ModelConfig(
        name="sonar-pro",
        provider="perplexity",
        input_cost_per_1m=3.00,
        output_cost_per_1m=15.00,
        context_window=200_000,
        best_for=[TaskType.ANALYSIS],
        api_model_id="sonar-pro"
    ),
}

PROVIDER_DEFAULT_MODEL: Dict[str, str] = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4.5",
    "gemini": "gemini-2.5-flash",
    "perplexity": "sonar-pro",
}

PROVIDER_PRIORITY: Dict[str, int] = {
    name: info["priority"] for name, info in ANALYSIS_PROVIDERS.items()
}

PERPLEXITY_BASE_URL = "https://api.perplexity.ai"

# Resilience settings for each provider attempt
RATE_LIMIT_PER_INTERVAL = 5
RATE_LIMIT_INTERVAL_MS = 10_000
BREAKER_FAILURE_THRESHOLD = 3
BREAKER_COOLDOWN_MS = 15_000
RETRIES = 2
RETRY_BASE_MS = 200
RETRY_MAX_MS = 1500

JSON_INSTRUCTION = ("You MUST respond with valid JSON only. No markdown fencing, "
                    "no explanation, no text outside the JSON object.")


# =============================================================================
# EXCEPTIONS
# =============================================================================

class ProviderError(Exception):
    """A provider call failed. Carries the provider name."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"{provider}: {message}")


class ProviderResponseError(ProviderError):
    """The provider answered but the reply could not be parsed as JSON."""

    def __init__(self, provider: str, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(provider, message)


class AllProvidersFailedError(Exception):
    """Every provider in the failover chain failed."""

    def __init__(self, subject: str, errors: Dict[str, str]):
        self.subject = subject
        self.errors = errors
        super().__init__(f"All AI providers failed for {subject}")


class BudgetExceededException(Exception):
    """Raised when daily budget is exceeded."""
    pass


class ModelUnavailableException(Exception):
    """Raised when a model or provider is unknown."""
    pass


# =============================================================================
# COST TRACKER
# =============================================================================

@dataclass
class UsageRecord:
    """Record of a single AI usage."""
    model: str
    task_type: TaskType
    tokens_input: int
    tokens_output: int
    cost_usd: float
    timestamp: datetime = field(default_factory=datetime.utcnow)
    latency_ms: Optional[int] = None
    user_id: Optional[str] = None


class CostTracker:
    """
    Track AI usage and costs.

    Maintains daily totals and enforces budget limits.
    """

    def __init__(self, daily_budget_usd: float = 50.0):
        self.daily_budget_usd = daily_budget_usd
        self._usage_records: List[UsageRecord] = []
        self._daily_totals: Dict[date, float] = {}

    @staticmethod
    def calculate_cost(model: str, tokens_input: int, tokens_output: int) -> float:
        config = MODELS.get(model)
        if not config:
            logger.warning(f"Unknown model: {model}, using estimated cost")
            return (tokens_input / 1_000_000) * 5.0 + (tokens_output / 1_000_000) * 15.0
        return (
            (tokens_input / 1_000_000) * config.input_cost_per_1m +
            (tokens_output / 1_000_000) * config.output_cost_per_1m
        )

    def record_usage(
        self,
        model: str,
        task_type: TaskType,
        tokens_input: int,
        tokens_output: int,
        latency_ms: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> UsageRecord:
        """Record a usage event and calculate cost."""
        record = UsageRecord(
            model=model,
            task_type=task_type,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            cost_usd=self.calculate_cost(model, tokens_input, tokens_output),
            latency_ms=latency_ms,
            user_id=user_id,
        )
        self._usage_records.append(record)

        # Cap usage records to prevent unbounded memory growth
        if len(self._usage_records) > 10_000:
            self._usage_records = self._usage_records[-5_000:]

        today = date.today()
        self._daily_totals[today] = self._daily_totals.get(today, 0.0) + record.cost_usd
        return record

    def get_today_spend(self) -> float:
        return self._daily_totals.get(date.today(), 0.0)

    def get_remaining_budget(self) -> float:
        return self.daily_budget_usd - self.get_today_spend()

    def check_budget(self, estimated_cost: float = 0.0) -> bool:
        """Check if budget allows a request."""
        return self.get_today_spend() + estimated_cost <= self.daily_budget_usd

    def get_usage_summary(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        records = self._usage_records
        if since:
            records = [r for r in records if r.timestamp >= since]

        by_model: Dict[str, Dict] = {}
        by_task: Dict[str, Dict] = {}
        for r in records:
            m = by_model.setdefault(r.model, {"cost": 0.0, "count": 0, "tokens": 0})
            m["cost"] += r.cost_usd
            m["count"] += 1
            m["tokens"] += r.tokens_input + r.tokens_output

            task_name = r.task_type.value if isinstance(r.task_type, TaskType) else str(r.task_type)
            t = by_task.setdefault(task_name, {"cost": 0.0, "count": 0})
            t["cost"] += r.cost_usd
            t["count"] += 1

        return {
            "total_cost_usd": sum(r.cost_usd for r in records),
            "total_requests": len(records),
            "total_tokens_input": sum(r.tokens_input for r in records),
            "total_tokens_output": sum(r.tokens_output for r in records),
            "by_model": by_model,
            "by_task": by_task
        }


# =============================================================================
# AI ROUTER
# =============================================================================

def estimate_tokens(text: str) -> int:
    """Token count for text using the cl100k_base encoding."""
    if not text:
        return 0
    try:
        enc = tiktoken.get_encoding("cl100k_base")
        return len(enc.encode(text))
    except (KeyError, ValueError, OSError):
        # Encoding files unavailable offline
        return len(text.split()) * 2


def order_providers(providers) -> List[str]:
    """Known analysis providers sorted by priority. Unknown names are dropped."""
    return sorted(
        (p for p in set(providers) if p in PROVIDER_PRIORITY),
        key=lambda p: PROVIDER_PRIORITY[p],
    )


class AIRouter:
    """
    Gateway to the analysis providers.

    Usage:
        router = get_ai_router()

        result = await router.generate(prompt, provider="openai", api_key=key)

        result = await router.generate_with_failover(
            prompt, api_keys={"openai": k1, "gemini": k2}, subject="Acme Corp"
        )
        result["provider"]  # whichever provider answered
    """

    def __init__(
        self,
        daily_budget_usd: float = 50.0,
        fallback_enabled: bool = True
    ):
        self.cost_tracker = CostTracker(daily_budget_usd)
        self.fallback_enabled = fallback_enabled

        # (provider, key fingerprint) -> SDK client
        self._clients: Dict[Tuple[str, str], Any] = {}

    def _get_client(self, provider: str, api_key: str):
        """Get or create an SDK client for provider using the caller's key."""
        fingerprint = hashlib.sha256(api_key.encode()).hexdigest()[:16]
        cache_key = (provider, fingerprint)
        if cache_key in self._clients:
            return self._clients[cache_key]

        if provider == "openai":
            from openai import AsyncOpenAI
            client = AsyncOpenAI(api_key=api_key)
        elif provider == "perplexity":
            # Perplexity exposes an OpenAI-compatible API
            from openai import AsyncOpenAI
            client = AsyncOpenAI(api_key=api_key, base_url=PERPLEXITY_BASE_URL)
        elif provider == "anthropic":
            from anthropic import AsyncAnthropic
            client = AsyncAnthropic(api_key=api_key)
        elif provider == "gemini":
            from google import genai
            client = genai.Client(api_key=api_key)
        else:
            raise ModelUnavailableException(f"Unknown provider: {provider}")

        self._clients[cache_key] = client
        return client

    def estimate_cost(
        self,
        model: str,
        prompt_tokens: int,
        expected_output_tokens: int
    ) -> float:
        if model not in MODELS:
            return 0.0
        return CostTracker.calculate_cost(model, prompt_tokens, expected_output_tokens)

    def _model_for(self, provider: str, model_override: Optional[str]) -> ModelConfig:
        model = model_override or PROVIDER_DEFAULT_MODEL.get(provider)
        config = MODELS.get(model) if model else None
        if not config:
            raise ModelUnavailableException(f"No model configured for provider: {provider}")
        if config.provider != provider:
            raise ModelUnavailableException(f"Model {model} does not belong to {provider}")
        return config

    async def generate(
        self,
        prompt: str,
        provider: str,
        api_key: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 4000,
        temperature: float = 0.3,
        model_override: Optional[str] = None,
        task_type: TaskType = TaskType.ANALYSIS,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Make exactly one provider call.

        Returns:
            Dict with response, model, provider, tokens, cost_usd and latency_ms

        Raises:
            BudgetExceededException: Daily budget already spent.
            ModelUnavailableException: Provider or model unknown.
            ProviderError: The provider call failed.
        """
        config = self._model_for(provider, model_override)
        prompt_tokens = estimate_tokens(prompt) + estimate_tokens(system_prompt or "")

        estimated = self.estimate_cost(config.name, prompt_tokens, max_tokens)
        if not self.cost_tracker.check_budget(estimated):
            raise BudgetExceededException(
                f"Daily budget ${self.cost_tracker.daily_budget_usd} exceeded. "
                f"Today's spend: ${self.cost_tracker.get_today_spend():.4f}"
            )

        max_tokens = min(max_tokens, config.max_output_tokens)
        start_time = time.time()
        try:
            if provider in ("openai", "perplexity"):
                response_text, output_tokens = await self._generate_openai(
                    config, api_key, prompt, system_prompt, max_tokens, temperature
                )
            elif provider == "anthropic":
                response_text, output_tokens = await self._generate_anthropic(
                    config, api_key, prompt, system_prompt, max_tokens, temperature
                )
            elif provider == "gemini":
                response_text, output_tokens = await self._generate_gemini(
                    config, api_key, prompt, system_prompt, max_tokens, temperature
                )
            else:
                raise ModelUnavailableException(f"Unsupported provider: {provider}")
        except ModelUnavailableException:
            raise
        except Exception as e:
            message = sanitize_error(str(e)) or type(e).__name__
            logger.error(f"Generation failed with {provider}/{config.name}: {message}")
            raise ProviderError(provider, message) from e

        latency_ms = int((time.time() - start_time) * 1000)

        record = self.cost_tracker.record_usage(
            model=config.name,
            task_type=task_type,
            tokens_input=prompt_tokens,
            tokens_output=output_tokens,
            latency_ms=latency_ms,
            user_id=user_id,
        )
        track_ai_call(provider, config.name, cost=record.cost_usd, duration=latency_ms / 1000)
        log_ai_cost(
            model=config.name,
            provider=provider,
            task_type=task_type.value,
            tokens_input=prompt_tokens,
            tokens_output=output_tokens,
            cost_usd=record.cost_usd,
            latency_ms=latency_ms,
            user_id=user_id,
        )

        return {
            "response": response_text,
            "model": config.name,
            "provider": provider,
            "tokens_input": prompt_tokens,
            "tokens_output": output_tokens,
            "cost_usd": record.cost_usd,
            "latency_ms": latency_ms
        }

    async def generate_json(
        self,
        prompt: str,
        provider: str,
        api_key: str,
        system_prompt: Optional[str] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """generate() with a JSON-only instruction; adds response_json to the result."""
        enhanced_system = f"{system_prompt}\n\n{JSON_INSTRUCTION}" if system_prompt else JSON_INSTRUCTION
        result = await self.generate(
            prompt=prompt, provider=provider, api_key=api_key,
            system_prompt=enhanced_system, **kwargs
        )
        try:
            result["response_json"] = parse_json_response(result["response"])
        except PromptResponseError as e:
            logger.warning(f"generate_json: {provider} returned unparseable JSON")
            raise ProviderResponseError(provider, str(e), raw=result["response"]) from e
        return result

    async def generate_with_failover(
        self,
        prompt: str,
        api_keys: Dict[str, str],
        subject: str = "request",
        system_prompt: Optional[str] = None,
        json_mode: bool = False,
        providers: Optional[List[str]] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Try each provider the caller has a key for, in priority order.

        Each attempt passes through the provider's rate limiter, its circuit
        breaker and jittered retries. The result dict gains `attempts`, a list
        of {provider, error} for providers that failed before the winner.

        Raises:
            AllProvidersFailedError: No provider produced a result.
            BudgetExceededException: Daily budget exhausted (not failed over).
        """
        candidates = order_providers(providers if providers is not None else api_keys.keys())
        candidates = [p for p in candidates if api_keys.get(p)]
        if not self.fallback_enabled:
            candidates = candidates[:1]

        call = self.generate_json if json_mode else self.generate
        errors: Dict[str, str] = {}

        for provider in candidates:
            api_key = api_keys[provider]
            breaker = get_circuit_breaker(
                f"ai:{provider}",
                failure_threshold=BREAKER_FAILURE_THRESHOLD,
                cooldown_ms=BREAKER_COOLDOWN_MS,
            )

            async def attempt():
                return await call(
                    prompt=prompt, provider=provider, api_key=api_key,
                    system_prompt=system_prompt, **kwargs
                )

            try:
                ensure_rate_limit(
                    f"ai:{provider}",
                    limit=RATE_LIMIT_PER_INTERVAL,
                    interval_ms=RATE_LIMIT_INTERVAL_MS,
                )
                result = await breaker.execute(
                    lambda: retry_with_jitter(
                        attempt,
                        retries=RETRIES,
                        base_ms=RETRY_BASE_MS,
                        max_ms=RETRY_MAX_MS,
                        no_retry_on=(
                            RateLimitExceededError, CircuitOpenError,
                            BudgetExceededException, ModelUnavailableException,
                        ),
                    ),
                    ignore=(BudgetExceededException,),
                )
            except BudgetExceededException:
                raise
            except (ProviderError, RateLimitExceededError, CircuitOpenError,
                    ModelUnavailableException) as e:
                errors[provider] = str(e)
                logger.info(f"{provider} failed for {subject}: {e}")
                continue

            logger.info(f"{provider} succeeded for {subject}")
            result["attempts"] = [{"provider": p, "error": err} for p, err in errors.items()]
            return result

        logger.warning(f"All AI providers failed for {subject}: {json.dumps(errors)}")
        raise AllProvidersFailedError(subject, errors)

    async def _generate_openai(
        self,
        config: ModelConfig,
        api_key: str,
        prompt: str,
        system_prompt: Optional[str],
        max_tokens: int,
        temperature: float
    ) -> Tuple[str, int]:
        """Generate with an OpenAI-compatible API (OpenAI, Perplexity)."""
        client = self._get_client(config.provider, api_key)

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = await client.chat.completions.create(
            model=config.api_model_id or config.name,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature
        )

        text = response.choices[0].message.content or ""
        tokens = response.usage.completion_tokens if response.usage else estimate_tokens(text)
        return text, tokens

    async def _generate_anthropic(
        self,
        config: ModelConfig,
        api_key: str,
        prompt: str,
        system_prompt: Optional[str],
        max_tokens: int,
        temperature: float
    ) -> Tuple[str, int]:
        client = self._get_client(config.provider, api_key)

        kwargs = {
            "model": config.api_model_id or config.name,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}]
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        response = await client.messages.create(**kwargs)

        text = response.content[0].text if response.content else ""
        tokens = response.usage.output_tokens if response.usage else estimate_tokens(text)
        return text, tokens

    async def _generate_gemini(
        self,
        config: ModelConfig,
        api_key: str,
        prompt: str,
        system_prompt: Optional[str],
        max_tokens: int,
        temperature: float
    ) -> Tuple[str, int]:
        """Generate with Gemini (google-genai SDK, sync client run in a thread)."""
        from google.genai import types as genai_types

        client = self._get_client(config.provider, api_key)

        response = await asyncio.to_thread(
            client.models.generate_content,
            model=config.api_model_id or config.name,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                system_instruction=system_prompt,
                max_output_tokens=max_tokens,
                temperature=temperature,
            ),
        )

        text = response.text or ""
        usage = getattr(response, "usage_metadata", None)
        tokens = getattr(usage, "candidates_token_count", None) or estimate_tokens(text)
        return text, tokens


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

_router: Optional[AIRouter] = None


def get_ai_router() -> AIRouter:
    """Get or create the AI router instance."""
    global _router

    if _router is None:
        daily_budget = float(os.getenv("AI_DAILY_BUDGET_USD", "50.0"))
        fallback = os.getenv("AI_FALLBACK_ENABLED", "true").lower() == "true"
        _router = AIRouter(daily_budget_usd=daily_budget, fallback_enabled=fallback)

    return _router


def reset_ai_router():
    """Drop the singleton (tests)."""
    global _router
    _router = None
