"""Run the pipeline: ``python -m token_trend_tracker``."""

import asyncio
import contextlib
import logging
import signal

from token_trend_tracker.config import Settings, get_settings
from token_trend_tracker.pipeline import Pipeline


async def _run(settings: Settings) -> None:
    pipeline = Pipeline(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, pipeline.request_stop)
    await pipeline.run()


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
