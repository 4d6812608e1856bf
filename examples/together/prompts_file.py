"""
Example: Prompts File to Zip Archive
Description: Generate one image per line of a text file and bundle them into a zip
Use case: Larger batches that run unattended
Provider: Together AI (FLUX.1-schnell-Free)

This example demonstrates:
- Loading prompts from a UTF-8 text file
- Multiple API keys rotated round-robin
- Writing images to a directory and a zip archive
"""

import asyncio
import os

from dotenv import load_dotenv

from fluxbatch import GenerationSettings, PoolLifetime, generate_images_from_file
from fluxbatch.core import estimate_minutes, read_prompts, recommended_concurrency

load_dotenv()

PROMPTS_FILE = "data/prompts.txt"

# Extra keys on top of TOGETHER_AI_API_KEY / TOGETHER_AI_API_KEYS
API_KEYS = [key for key in os.getenv("EXTRA_TOGETHER_KEYS", "").split(",") if key]


async def main() -> None:
    concurrency = recommended_concurrency(len(API_KEYS) or 1)
    prompt_count = len(read_prompts(PROMPTS_FILE))
    print(f"{prompt_count} prompts, about {estimate_minutes(prompt_count, concurrency)} minute(s)")

    result = await generate_images_from_file(
        prompts_file=PROMPTS_FILE,
        output_dir="data/images",
        zip_file="data/images.zip",
        api_keys=API_KEYS,
        settings=GenerationSettings(
            aspect_ratio="1:1",
            steps=4,
            negative_prompt="blurry, low quality, watermark",
            concurrency=concurrency,
            max_attempts_per_prompt=5,
            retry_delay_seconds=10,
        ),
        pool_lifetime=PoolLifetime.PROCESS,
        logging_level=10,
    )

    print("\nGeneration complete!")
    print(f"Successful: {result.stats.successful}")
    print(f"Failed: {result.stats.failed}")
    print(f"Retry passes: {result.stats.retry_passes}")


if __name__ == "__main__":
    asyncio.run(main())
