"""
Example: Scheduler Controls
Description: Drive a BatchScheduler directly and watch its snapshots
Use case: Embedding batch generation in a UI or a long-running service
Provider: Together AI (FLUX.1-schnell-Free)

This example demonstrates:
- Building the scheduler from a provider and a credential pool
- Progress snapshots through on_update
- Pausing and resuming a running batch
"""

import asyncio

from dotenv import load_dotenv

from fluxbatch import (
    BatchScheduler,
    BatchSnapshot,
    CredentialPool,
    GenerationSettings,
    TogetherProvider,
)

load_dotenv()


def print_snapshot(snapshot: BatchSnapshot) -> None:
    keys = ", ".join(
        f"{entry.api_key}: {entry.successful_requests}/{entry.total_requests}"
        for entry in snapshot.credential_stats
    )
    state = "paused" if snapshot.is_paused else f"pass {snapshot.retry_pass}"
    print(
        f"[{state}] {snapshot.progress_percent:5.1f}% "
        f"done={snapshot.completed_count} failed={snapshot.failed_count} "
        f"active={snapshot.active_count} | {keys}"
    )


async def main() -> None:
    scheduler = BatchScheduler(
        provider=TogetherProvider(),
        pool=CredentialPool.from_env(),
        settings=GenerationSettings(aspect_ratio="9:16", concurrency=2),
        on_update=print_snapshot,
        show_progress=False,
    )

    prompts = [f"a watercolor postcard of city number {i}" for i in range(1, 9)]
    run = asyncio.create_task(scheduler.run(prompts))

    await asyncio.sleep(20)
    scheduler.pause()
    await asyncio.sleep(10)
    scheduler.resume()

    result = await run
    print(f"Generated {len(result.images)} / {result.stats.total_prompts} images")


if __name__ == "__main__":
    asyncio.run(main())
