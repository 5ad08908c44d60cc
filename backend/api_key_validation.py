"""
Market Intel - Provider API Key Validation

Probes a provider with the user's key and reports whether the key works.
Validators never raise: network failures and timeouts come back as
is_valid=False with the error message.

Result shape:
    {
        "is_valid": bool,
        "provider": str,
        "error": str | None,
        "details": {"response_time_ms", "status_code", "endpoint", "models_count"}
    }
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from input_sanitizer import sanitize_error

logger = logging.getLogger(__name__)

VALIDATION_TIMEOUT = 8.0

ANTHROPIC_VERSION = "2023-06-01"


def _result(
    provider: str,
    is_valid: bool,
    error: Optional[str] = None,
    started: float = None,
    status_code: Optional[int] = None,
    endpoint: Optional[str] = None,
    models_count: Optional[int] = None,
) -> Dict[str, Any]:
    details: Dict[str, Any] = {}
    if started is not None:
        details["response_time_ms"] = int((time.time() - started) * 1000)
    if status_code is not None:
        details["status_code"] = status_code
    if endpoint:
        details["endpoint"] = endpoint
    if models_count is not None:
        details["models_count"] = models_count
    return {"is_valid": is_valid, "provider": provider, "error": error, "details": details}


def _count_models(resp: httpx.Response, field: str) -> int:
    try:
        return len(resp.json().get(field) or [])
    except ValueError:
        return 0


# =============================================================================
# PROVIDER VALIDATORS
# =============================================================================

async def validate_openai(client: httpx.AsyncClient, api_key: str) -> Dict[str, Any]:
    started = time.time()
    resp = await client.get(
        "https://api.openai.com/v1/models",
        headers={"Authorization": f"Bearer {api_key}"},
    )
    if resp.status_code == 200:
        return _result("openai", True, started=started, status_code=200,
                       endpoint="/v1/models", models_count=_count_models(resp, "data"))
    return _result("openai", False, f"OpenAI API error: {resp.status_code}",
                   started=started, status_code=resp.status_code, endpoint="/v1/models")


async def validate_anthropic(client: httpx.AsyncClient, api_key: str) -> Dict[str, Any]:
    """A one-token message. Anything but 401/403 means the key authenticated."""
    started = time.time()
    resp = await client.post(
        "https://api.anthropic.com/v1/messages",
        headers={
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        },
        json={
            "model": "claude-3-5-haiku-latest",
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "test"}],
        },
    )
    is_valid = resp.status_code not in (401, 403)
    return _result(
        "anthropic", is_valid,
        None if is_valid else f"Invalid Anthropic API key: {resp.status_code}",
        started=started, status_code=resp.status_code, endpoint="/v1/messages",
    )


async def validate_gemini(client: httpx.AsyncClient, api_key: str, provider: str = "gemini") -> Dict[str, Any]:
    started = time.time()
    resp = await client.get(
        "https://generativelanguage.googleapis.com/v1beta/models",
        params={"key": api_key},
    )
    if resp.status_code == 200:
        return _result(provider, True, started=started, status_code=200,
                       endpoint="/v1beta/models", models_count=_count_models(resp, "models"))
    return _result(provider, False, f"Gemini API error: {resp.status_code}",
                   started=started, status_code=resp.status_code, endpoint="/v1beta/models")


async def validate_perplexity(client: httpx.AsyncClient, api_key: str) -> Dict[str, Any]:
    started = time.time()
    resp = await client.post(
        "https://api.perplexity.ai/chat/completions",
        headers={"Authorization": f"Bearer {api_key}"},
        json={
            "model": "sonar",
            "messages": [{"role": "user", "content": "test"}],
            "max_tokens": 1,
        },
    )
    is_valid = resp.status_code not in (401, 403)
    return _result(
        "perplexity", is_valid,
        None if is_valid else f"Invalid Perplexity API key: {resp.status_code}",
        started=started, status_code=resp.status_code, endpoint="/chat/completions",
    )


# provider -> (url, endpoint label, request kwargs builder)
GENERIC_PROBES: Dict[str, tuple] = {
    "groq": (
        "https://api.groq.com/openai/v1/models", "/openai/v1/models",
        lambda key: {"headers": {"Authorization": f"Bearer {key}"}},
    ),
    "mistral": (
        "https://api.mistral.ai/v1/models", "/v1/models",
        lambda key: {"headers": {"Authorization": f"Bearer {key}"}},
    ),
    "cohere": (
        "https://api.cohere.ai/v1/models", "/v1/models",
        lambda key: {"headers": {"Authorization": f"Bearer {key}"}},
    ),
    "huggingface": (
        "https://huggingface.co/api/whoami-v2", "/api/whoami-v2",
        lambda key: {"headers": {"Authorization": f"Bearer {key}"}},
    ),
    "serpapi": (
        "https://serpapi.com/account", "/account",
        lambda key: {"params": {"api_key": key}},
    ),
    "newsapi": (
        "https://newsapi.org/v2/top-headlines", "/v2/top-headlines",
        lambda key: {"headers": {"X-Api-Key": key}, "params": {"country": "us", "pageSize": 1}},
    ),
    "alphavantage": (
        "https://www.alphavantage.co/query", "/query",
        lambda key: {"params": {"function": "GLOBAL_QUOTE", "symbol": "IBM", "apikey": key}},
    ),
}


async def validate_generic(client: httpx.AsyncClient, provider: str, api_key: str) -> Dict[str, Any]:
    url, endpoint, build = GENERIC_PROBES[provider]
    started = time.time()
    resp = await client.get(url, **build(api_key))
    is_valid = resp.is_success
    error = None if is_valid else f"{provider} API error: {resp.status_code}"

    # Alpha Vantage answers 200 with an error body for bad keys
    if is_valid and provider == "alphavantage":
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if "Error Message" in body or "Information" in body:
            is_valid = False
            error = "alphavantage API error: key rejected"

    return _result(provider, is_valid, error, started=started,
                   status_code=resp.status_code, endpoint=endpoint)


_VALIDATORS: Dict[str, Callable] = {
    "openai": validate_openai,
    "anthropic": validate_anthropic,
    "gemini": validate_gemini,
    "google": lambda client, key: validate_gemini(client, key, provider="google"),
    "perplexity": validate_perplexity,
}


def is_supported(provider: str) -> bool:
    return provider in _VALIDATORS or provider in GENERIC_PROBES


async def validate_api_key(
    provider: str,
    api_key: str,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """
    Validate a key against its provider.

    Args:
        provider: Provider name (case-insensitive).
        api_key: The clear-text key.
        client: Optional shared AsyncClient (tests pass one with a MockTransport).
    """
    provider = (provider or "").lower().strip()
    if not is_supported(provider):
        return _result(provider, False, f"Unsupported provider: {provider}")
    if not api_key or not api_key.strip():
        return _result(provider, False, "API key is empty")
    if not api_key.isascii():
        # Keys travel in HTTP headers, which httpx encodes as ASCII
        return _result(provider, False, "API key contains non-ASCII characters")

    logger.info(f"Validating {provider} API key")
    started = time.time()
    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=VALIDATION_TIMEOUT)
    try:
        if provider in _VALIDATORS:
            return await _VALIDATORS[provider](client, api_key.strip())
        return await validate_generic(client, provider, api_key.strip())
    except httpx.TimeoutException:
        return _result(provider, False, "Validation timeout", started=started)
    except httpx.HTTPError as e:
        logger.warning(f"{provider} key validation request failed: {sanitize_error(e)}")
        return _result(provider, False, sanitize_error(str(e)) or type(e).__name__, started=started)
    finally:
        if own_client:
            await client.aclose()
