"""
Run a small text-to-video batch against the configured Gemini project.

Requires GEMINI_API_KEY (or GEMINI_API_KEYS) in the environment or a .env file.
"""

import asyncio

from genwave import Settings, build_engine
from genwave.notifications import BATCH_UPDATE, JOB_UPDATE
from genwave.utils.logging import setup_logging


async def main() -> None:
    settings = Settings.from_env()
    setup_logging(level=settings.log_level)

    async with build_engine(settings) as engine:
        engine.notifications.subscribe(
            BATCH_UPDATE, lambda payload: print(f"batch {payload['status']} {payload['progress']}%")
        )
        engine.notifications.subscribe(
            JOB_UPDATE, lambda payload: print(f"job {payload['index']} {payload['status']}")
        )
        batch_id = await engine.scheduler.create_batch(
            [
                {"text": "A lighthouse on a cliff during a storm"},
                {"text": "A paper boat drifting down a rainy street"},
            ],
            template_id="social_media",
            settings={"max_concurrent": 2},
        )
        snapshot = await engine.scheduler.wait(batch_id)
        print(snapshot.model_dump_json(by_alias=True, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
