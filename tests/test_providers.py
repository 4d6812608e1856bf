import base64
from collections.abc import Mapping
from typing import Any

import pytest

from fluxbatch.core.errors import ErrorKind, GenerationError, RateLimitError, RateLimitScope
from fluxbatch.core.models import DEFAULT_MODEL_ID
from fluxbatch.providers import get_provider, register_provider
from fluxbatch.providers.base import ImageRequest
from fluxbatch.providers.together import TOGETHER_IMAGES_URL, TogetherProvider

API_KEY = "tgp_v1_abcdefghijkl"

REQUEST = ImageRequest(
    prompt="a red fox in the snow",
    negative_prompt="blurry",
    width=1024,
    height=576,
    steps=2,
    seed=7,
)


def _success_payload(image: bytes) -> dict[str, Any]:
    return {"id": "abc", "data": [{"index": 0, "b64_json": base64.b64encode(image).decode()}]}


class TestTogetherProvider:
    """Tests for Together AI request building and response parsing."""

    @pytest.fixture
    def provider(self) -> TogetherProvider:
        return TogetherProvider()

    def test_defaults(self, provider: TogetherProvider) -> None:
        assert provider.name == "together"
        assert provider.model == DEFAULT_MODEL_ID
        assert provider.request_url == TOGETHER_IMAGES_URL

    def test_headers(self, provider: TogetherProvider) -> None:
        headers = provider.build_headers(API_KEY)

        assert headers["Authorization"] == f"Bearer {API_KEY}"
        assert headers["Content-Type"] == "application/json"

    def test_payload(self, provider: TogetherProvider) -> None:
        """Test that one base64 image is requested with the request's parameters."""
        payload = provider.build_payload(REQUEST)

        assert payload == {
            "model": DEFAULT_MODEL_ID,
            "prompt": "a red fox in the snow",
            "negative_prompt": "blurry",
            "width": 1024,
            "height": 576,
            "steps": 2,
            "seed": 7,
            "n": 1,
            "response_format": "b64_json",
        }

    @pytest.mark.parametrize(
        argnames="payload,expected",
        argvalues=[
            ({"error": {"message": "Invalid API key", "type": "auth"}}, "Invalid API key"),
            ({"error": "plain message"}, "plain message"),
            ({"data": []}, None),
            ({"error": None}, None),
        ],
    )
    def test_parse_error(
        self, provider: TogetherProvider, payload: dict[str, Any], expected: str | None
    ) -> None:
        assert provider.parse_error(payload) == expected

    def test_extract_image(self, provider: TogetherProvider) -> None:
        assert provider.extract_image(_success_payload(b"png")) == b"png"

    @pytest.mark.parametrize(
        argnames="payload",
        argvalues=[
            {},
            {"data": []},
            {"data": [{"index": 0}]},
            {"data": [{"b64_json": ""}]},
            {"data": [{"b64_json": "not base64!!"}]},
            {"data": "nope"},
        ],
    )
    def test_extract_image_missing_or_invalid(
        self, provider: TogetherProvider, payload: dict[str, Any]
    ) -> None:
        """Test that unusable payloads yield no image instead of raising."""
        assert provider.extract_image(payload) is None


class TestErrorClassification:
    """Tests for turning error responses into structured errors."""

    @pytest.fixture
    def provider(self) -> TogetherProvider:
        return TogetherProvider()

    def test_success_is_not_an_error(self, provider: TogetherProvider) -> None:
        assert provider.classify_error(_success_payload(b"png"), 200, {}, API_KEY) is None

    def test_model_scoped_rate_limit(self, provider: TogetherProvider) -> None:
        """Test that a 429 naming the model applies to the model quota."""
        payload = {
            "error": {
                "message": "You have reached the rate limit specific to this model "
                "black-forest-labs/FLUX.1-schnell-Free. The maximum rate limit for this "
                "model is 6.0 queries per minute."
            }
        }

        error = provider.classify_error(payload, 429, {"Retry-After": "12"}, API_KEY)

        assert isinstance(error, RateLimitError)
        assert error.scope is RateLimitScope.MODEL
        assert error.kind is ErrorKind.RATE_LIMIT_MODEL
        assert error.retry_after == 12.0
        assert error.api_key_used == "tgp_...ijkl"

    def test_credential_scoped_rate_limit(self, provider: TogetherProvider) -> None:
        payload = {"error": {"message": "Too many requests for this API key"}}

        error = provider.classify_error(payload, 429, None, API_KEY)

        assert isinstance(error, RateLimitError)
        assert error.kind is ErrorKind.RATE_LIMIT_CREDENTIAL
        assert error.retry_after is None

    def test_rate_limit_detected_from_message(self, provider: TogetherProvider) -> None:
        """Test that rate-limit vocabulary is recognised without a 429 status."""
        error = provider.classify_error({"error": "Rate limit exceeded"}, 400, {}, API_KEY)

        assert isinstance(error, RateLimitError)

    def test_generic_error(self, provider: TogetherProvider) -> None:
        error = provider.classify_error({"error": {"message": "Bad prompt"}}, 400, {}, API_KEY)

        assert type(error) is GenerationError
        assert error.kind is ErrorKind.GENERIC
        assert str(error) == "Bad prompt (API key: tgp_...ijkl)"
        assert API_KEY not in str(error)

    def test_http_error_without_message(self, provider: TogetherProvider) -> None:
        error = provider.classify_error({}, 503, {"Retry-After": "soon"}, API_KEY)

        assert error is not None
        assert error.message == "HTTP error 503"
        assert error.retry_after is None


class TestGenerate:
    """Tests for the full generate() flow with a stubbed transport."""

    @staticmethod
    def _stub_send(
        provider: TogetherProvider,
        payload: dict[str, Any],
        status: int,
        response_headers: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        sent: list[dict[str, Any]] = []

        async def send(
            session: Any, headers: Mapping[str, str], request_json: dict[str, Any]
        ) -> tuple[dict[str, Any], int, Mapping[str, str]]:
            sent.append({"headers": dict(headers), "json": request_json})
            return payload, status, response_headers or {}

        provider.send = send  # type: ignore[method-assign]
        return sent

    @pytest.mark.asyncio
    async def test_generate_returns_image(self) -> None:
        provider = TogetherProvider()
        sent = self._stub_send(provider, _success_payload(b"png"), 200)

        image = await provider.generate(None, API_KEY, REQUEST)  # type: ignore[arg-type]

        assert image == b"png"
        assert sent[0]["headers"]["Authorization"] == f"Bearer {API_KEY}"
        assert sent[0]["json"]["prompt"] == REQUEST.prompt

    @pytest.mark.asyncio
    async def test_generate_raises_classified_error(self) -> None:
        provider = TogetherProvider()
        self._stub_send(provider, {"error": {"message": "Too many requests"}}, 429)

        with pytest.raises(RateLimitError):
            await provider.generate(None, API_KEY, REQUEST)  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_generate_without_image(self) -> None:
        provider = TogetherProvider()
        self._stub_send(provider, {"data": []}, 200)

        assert await provider.generate(None, API_KEY, REQUEST) is None  # type: ignore[arg-type]


class TestProviderRegistry:
    """Tests for looking up providers by name."""

    def test_get_provider(self) -> None:
        provider = get_provider("Together", model="black-forest-labs/FLUX.1-dev")

        assert isinstance(provider, TogetherProvider)
        assert provider.model == "black-forest-labs/FLUX.1-dev"

    def test_unknown_provider(self) -> None:
        with pytest.raises(ValueError, match="Unknown provider"):
            get_provider("nonexistent")

    def test_register_duplicate(self) -> None:
        with pytest.raises(ValueError, match="already registered"):
            register_provider("together", TogetherProvider)
