"""
Example: Minimal Quickstart
Description: The simplest possible fluxbatch example - generate a few images in memory
Use case: Learning the basics, quick testing
Provider: Together AI (FLUX.1-schnell-Free)

This example demonstrates:
- Reading API keys from the environment
- In-memory batch generation
- Accessing generated images
"""

import asyncio
from pathlib import Path

from dotenv import load_dotenv

from fluxbatch import GenerationSettings, generate_images

# Expects TOGETHER_AI_API_KEY or a comma-separated TOGETHER_AI_API_KEYS
load_dotenv()


async def main() -> None:
    # 1. Write your prompts as a simple list
    prompts = [
        "a red fox sleeping in fresh snow, soft morning light",
        "a lighthouse at dusk, long exposure, crashing waves",
        "a bowl of ramen on a wooden table, studio photography",
    ]

    # 2. Generate with the default model and its shared rate limit
    result = await generate_images(
        prompts=prompts,
        settings=GenerationSettings(aspect_ratio="16:9", concurrency=2),
    )

    # 3. Save your images
    output_dir = Path("images")
    output_dir.mkdir(exist_ok=True)
    for image in result.images:
        (output_dir / image.filename).write_bytes(image.data)
        print(f"{image.filename}: {image.prompt[:60]} (seed {image.seed})")

    for job in result.failures:
        print(f"Failed prompt {job.index + 1}: {job.error}")


if __name__ == "__main__":
    asyncio.run(main())
