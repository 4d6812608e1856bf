from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from aiohttp import ClientSession

from fluxbatch.core.errors import GenerationError, RateLimitError, RateLimitScope
from fluxbatch.utils import mask_api_key

RATE_LIMIT_PHRASES = ("rate limit", "too many requests")


@dataclass(frozen=True)
class ImageRequest:
    """
    Provider-independent description of one image to generate.

    Attributes:
        prompt (str): Text prompt
        negative_prompt (str): Text the model should steer away from
        width (int): Width in pixels
        height (int): Height in pixels
        steps (int): Diffusion steps (already clamped)
        seed (int): Seed for this image
    """

    prompt: str
    negative_prompt: str
    width: int
    height: int
    steps: int
    seed: int

    @property
    def size(self) -> str:
        return f"{self.width}x{self.height}"


class BaseProvider(ABC):
    """
    Abstract base class for image-generation provider implementations.

    Default implementations provided:
    - Bearer token authentication (build_headers)
    - JSON POST returning payload, status and headers (send)
    - Structured error classification (classify_error, is_rate_limited)
    - The full generate() flow built from the pieces above

    Subclasses must implement:
    - build_payload: Provider-specific request body
    - parse_error: Provider-specific error message extraction
    - extract_image: Provider-specific image decoding

    Attributes:
        name (str): Human-readable provider identifier (e.g., "together")
        model (str): Model identifier; also the regulated entity for rate limiting
        request_url (str): Full API endpoint URL
    """

    name: str
    model: str
    request_url: str

    def build_headers(self, api_key: str) -> dict[str, str]:
        """
        Build authentication headers for one request.

        Args:
            api_key (str): Key reserved for this request

        Returns:
            dict[str, str]: HTTP headers including authentication
        """
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def send(
        self,
        session: ClientSession,
        headers: Mapping[str, str],
        request_json: dict[str, Any],
    ) -> tuple[dict[str, Any], int, Mapping[str, str]]:
        """
        Perform the HTTP request to the provider's API.

        Args:
            session (ClientSession): Aiohttp client session
            headers (Mapping[str, str]): HTTP headers from build_headers()
            request_json (dict[str, Any]): Request payload

        Returns:
            Tuple of (response_payload, status_code, response_headers)

        Raises:
            aiohttp.ClientError: For network/connection errors
            asyncio.TimeoutError: For request timeouts
            ValueError: If the body is not valid JSON
        """
        async with session.post(self.request_url, headers=headers, json=request_json) as response:
            data = await response.json(content_type=None)
            if not isinstance(data, dict):
                data = {"error": {"message": f"Unexpected response body: {str(data)[:100]}"}}
            return data, response.status, response.headers

    def is_rate_limited(self, payload: dict[str, Any], status: int) -> bool:
        """
        Determine if the response indicates rate limiting.

        Checks the HTTP 429 status first, then rate-limit vocabulary in the
        error message.
        """
        if status == 429:
            return True
        error_msg = (self.parse_error(payload) or "").lower()
        return any(phrase in error_msg for phrase in RATE_LIMIT_PHRASES)

    def rate_limit_scope(self, message: str) -> RateLimitScope:
        """
        Decide whether a rate limit applies to the key or to the whole model.

        Default: the limit is model-wide when the message names the model.
        """
        if self.model and self.model.lower() in message.lower():
            return RateLimitScope.MODEL
        return RateLimitScope.CREDENTIAL

    def classify_error(
        self,
        payload: dict[str, Any],
        status: int,
        headers: Optional[Mapping[str, str]],
        api_key: str,
    ) -> Optional[GenerationError]:
        """
        Turn an error response into a structured error, or None on success.

        Args:
            payload (dict[str, Any]): Parsed response body
            status (int): HTTP status code
            headers (Optional[Mapping[str, str]]): Response headers
            api_key (str): Key the request used (only its masked form is kept)

        Returns:
            Optional[GenerationError]: Classified error, None if the response is not an error
        """
        message = self.parse_error(payload)
        if message is None and status < 400:
            return None
        message = message or f"HTTP error {status}"
        masked = mask_api_key(api_key)

        if self.is_rate_limited(payload, status):
            return RateLimitError(
                message,
                scope=self.rate_limit_scope(message),
                retry_after=_retry_after_seconds(headers),
                api_key_used=masked,
            )
        return GenerationError(message, api_key_used=masked)

    async def generate(
        self,
        session: ClientSession,
        api_key: str,
        request: ImageRequest,
    ) -> Optional[bytes]:
        """
        Generate one image.

        Returns:
            Optional[bytes]: Image bytes, or None if the response carried no image

        Raises:
            GenerationError: Classified error response (RateLimitError for rate limits)
            Exception: Transport failures propagate unchanged
        """
        payload, status, headers = await self.send(
            session=session,
            headers=self.build_headers(api_key),
            request_json=self.build_payload(request),
        )
        error = self.classify_error(payload, status, headers, api_key)
        if error is not None:
            raise error
        return self.extract_image(payload)

    @abstractmethod
    def build_payload(self, request: ImageRequest) -> dict[str, Any]:
        """Build the JSON request body for one image."""
        ...

    @abstractmethod
    def parse_error(self, payload: dict[str, Any]) -> Optional[str]:
        """
        Extract error message from API response payload.

        Returns:
            Optional[str]: Error message if present, None if successful response
        """
        ...

    @abstractmethod
    def extract_image(self, payload: dict[str, Any]) -> Optional[bytes]:
        """
        Decode the image from a successful response.

        Returns:
            Optional[bytes]: Image bytes, None if the payload holds no usable image
        """
        ...


def _retry_after_seconds(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    if not headers:
        return None
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
