"""
Market Intel - Provider Key Validation Tests
Validators run against an httpx.MockTransport, so no network is used.
"""
import pytest
import sys
import os

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from api_key_validation import is_supported, validate_api_key  # noqa: E402

pytestmark = pytest.mark.timeout(10)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def respond(status_code, body=None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body if body is not None else {})
    return handler


class TestInputChecks:

    @pytest.mark.asyncio
    async def test_unsupported_provider(self):
        result = await validate_api_key("myspace", "key-123456789")
        assert result["is_valid"] is False
        assert result["error"] == "Unsupported provider: myspace"

    @pytest.mark.asyncio
    async def test_empty_key(self):
        result = await validate_api_key("openai", "   ")
        assert result == {"is_valid": False, "provider": "openai", "error": "API key is empty", "details": {}}

    @pytest.mark.asyncio
    async def test_non_ascii_key_rejected_before_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        async with mock_client(handler) as client:
            result = await validate_api_key("anthropic", "sk-ant-abc\u2019def", client=client)
        assert result["is_valid"] is False
        assert result["error"] == "API key contains non-ASCII characters"

    def test_supported_providers(self):
        for provider in ("openai", "anthropic", "gemini", "perplexity", "groq", "alphavantage"):
            assert is_supported(provider)
        assert not is_supported("myspace")


class TestOpenAI:

    @pytest.mark.asyncio
    async def test_valid_key_counts_models(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["path"] = request.url.path
            return httpx.Response(200, json={"data": [{"id": "gpt-4o"}, {"id": "gpt-4o-mini"}]})

        async with mock_client(handler) as client:
            result = await validate_api_key("OpenAI", " sk-test-1234567890 ", client=client)

        assert result["is_valid"] is True
        assert result["provider"] == "openai"
        assert result["details"]["models_count"] == 2
        assert result["details"]["endpoint"] == "/v1/models"
        assert seen == {"auth": "Bearer sk-test-1234567890", "path": "/v1/models"}

    @pytest.mark.asyncio
    async def test_rejected_key(self):
        async with mock_client(respond(401)) as client:
            result = await validate_api_key("openai", "sk-bad", client=client)
        assert result["is_valid"] is False
        assert result["error"] == "OpenAI API error: 401"
        assert result["details"]["status_code"] == 401


class TestAnthropicAndPerplexity:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider", ["anthropic", "perplexity"])
    async def test_rate_limited_key_still_authenticated(self, provider):
        async with mock_client(respond(429)) as client:
            result = await validate_api_key(provider, "key-1234567890", client=client)
        assert result["is_valid"] is True
        assert result["error"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_failure(self, status):
        async with mock_client(respond(status)) as client:
            result = await validate_api_key("anthropic", "key-1234567890", client=client)
        assert result["is_valid"] is False
        assert str(status) in result["error"]

    @pytest.mark.asyncio
    async def test_anthropic_sends_version_header(self):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, json={})

        async with mock_client(handler) as client:
            await validate_api_key("anthropic", "key-1234567890", client=client)
        assert seen["x-api-key"] == "key-1234567890"
        assert seen["anthropic-version"] == "2023-06-01"


class TestGemini:

    @pytest.mark.asyncio
    async def test_key_sent_as_query_param(self):
        seen = {}

        def handler(request):
            seen["key"] = request.url.params.get("key")
            return httpx.Response(200, json={"models": [{"name": "gemini-2.0-flash"}]})

        async with mock_client(handler) as client:
            result = await validate_api_key("gemini", "AIza-test-key", client=client)
        assert result["is_valid"] is True
        assert result["details"]["models_count"] == 1
        assert seen["key"] == "AIza-test-key"


class TestGenericProbes:

    @pytest.mark.asyncio
    async def test_groq_success(self):
        async with mock_client(respond(200, {"data": []})) as client:
            result = await validate_api_key("groq", "gsk_1234567890", client=client)
        assert result["is_valid"] is True
        assert result["details"]["endpoint"] == "/openai/v1/models"

    @pytest.mark.asyncio
    async def test_mistral_failure(self):
        async with mock_client(respond(401)) as client:
            result = await validate_api_key("mistral", "bad-key-123", client=client)
        assert result["is_valid"] is False
        assert result["error"] == "mistral API error: 401"

    @pytest.mark.asyncio
    async def test_alphavantage_error_body_is_invalid(self):
        body = {"Error Message": "Invalid API call."}
        async with mock_client(respond(200, body)) as client:
            result = await validate_api_key("alphavantage", "demo-key-123", client=client)
        assert result["is_valid"] is False
        assert result["error"] == "alphavantage API error: key rejected"


class TestTransportFailures:

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with mock_client(handler) as client:
            result = await validate_api_key("openai", "sk-test-1234567890", client=client)
        assert result["is_valid"] is False
        assert result["error"] == "Validation timeout"

    @pytest.mark.asyncio
    async def test_connection_error_is_reported_not_raised(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with mock_client(handler) as client:
            result = await validate_api_key("groq", "gsk_1234567890", client=client)
        assert result["is_valid"] is False
        assert "connection refused" in result["error"]
