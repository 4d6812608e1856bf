from __future__ import annotations

import base64

BASE_IMAGE_SIZE = 1024

MAX_SEED = 2147483647


def mask_api_key(key: str | None) -> str:
    """
    Mask an API key so it can be logged or displayed.

    Args:
        key (str | None): The raw API key.

    Returns:
        str: First and last four characters joined by "...", or "***" for short keys.

    Example:
        >>> mask_api_key("tgp_v1_abcdefghijkl")
        'tgp_...ijkl'
    """
    if not key or len(key) <= 8:
        return "***"
    return f"{key[:4]}...{key[-4:]}"


def image_dimensions(aspect_ratio: str) -> tuple[int, int]:
    """
    Convert an aspect ratio label to pixel dimensions.

    Unknown labels fall back to a square image.

    Args:
        aspect_ratio (str): One of "1:1", "16:9", "9:16".

    Returns:
        tuple[int, int]: (width, height) in pixels.
    """
    if aspect_ratio == "16:9":
        return BASE_IMAGE_SIZE, round(BASE_IMAGE_SIZE * 9 / 16)
    if aspect_ratio == "9:16":
        return round(BASE_IMAGE_SIZE * 9 / 16), BASE_IMAGE_SIZE
    return BASE_IMAGE_SIZE, BASE_IMAGE_SIZE


def clamp_steps(steps: int | None, default: int = 2) -> int:
    """Clamp diffusion steps to the 1-4 range the schnell models accept."""
    return min(max(steps or default, 1), 4)


def to_data_url(image_bytes: bytes, mime_type: str = "image/png") -> str:
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"

