from __future__ import annotations

import base64
import binascii
from typing import Any, Optional

from fluxbatch.core.models import DEFAULT_MODEL_ID
from fluxbatch.providers.base import BaseProvider, ImageRequest

TOGETHER_IMAGES_URL = "https://api.together.xyz/v1/images/generations"


class TogetherProvider(BaseProvider):
    """
    Provider implementation for the Together AI images API.

    See: https://docs.together.ai/reference/post-images-generations

    The free FLUX.1-schnell endpoint enforces a small requests-per-minute
    quota shared by every key. Its 429 responses name the model, e.g.
    "You have reached the rate limit specific to this model
    black-forest-labs/FLUX.1-schnell-Free", which is how model-wide limits
    are told apart from per-key ones.

    Attributes:
        name (str): Always "together"
        model (str): Model identifier (e.g., "black-forest-labs/FLUX.1-schnell-Free")
        request_url (str): Full API endpoint URL

    Example:
        >>> provider = TogetherProvider()
        >>> provider.model
        'black-forest-labs/FLUX.1-schnell-Free'
    """

    name = "together"

    def __init__(
        self,
        model: str = DEFAULT_MODEL_ID,
        request_url: str = TOGETHER_IMAGES_URL,
    ) -> None:
        self.model = model
        self.request_url = request_url

    def build_payload(self, request: ImageRequest) -> dict[str, Any]:
        return {
            "model": self.model,
            "prompt": request.prompt,
            "negative_prompt": request.negative_prompt,
            "width": request.width,
            "height": request.height,
            "steps": request.steps,
            "seed": request.seed,
            "n": 1,
            "response_format": "b64_json",
        }

    def parse_error(self, payload: dict[str, Any]) -> Optional[str]:
        """
        Parse error from a Together AI response.

        Error response format:
        {
            "error": {
                "message": "error description",
                "type": "error_type",
                "code": "error_code"
            }
        }
        """
        error = payload.get("error")
        if not error:
            return None
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error)

    def extract_image(self, payload: dict[str, Any]) -> Optional[bytes]:
        """
        Decode the first image of a successful response.

        Success response format:
        {
            "id": "...",
            "model": "...",
            "data": [{"index": 0, "b64_json": "..."}]
        }
        """
        data = payload.get("data")
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            return None
        encoded = data[0].get("b64_json")
        if not encoded:
            return None
        try:
            image = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            return None
        return image or None
