import asyncio

from loguru import logger

from fund_sweeper.config import AppSettings
from fund_sweeper.service import SweepService


async def run(settings: AppSettings):
    service = SweepService(settings)
    started = await service.start_configured_watches()
    if not started:
        logger.warning("No watches configured in {}; nothing to sweep.", settings.watches_config)
        await service.shutdown()
        return
    try:
        await asyncio.Event().wait()
    finally:
        await service.shutdown()


def main():
    settings = AppSettings()
    logger.remove()
    logger.add(lambda m: print(m, end=""), level=settings.log_level)

    logger.info("Headless sweeper: watches from {}", settings.watches_config)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Sweeper interrupted; shutting down.")


if __name__ == "__main__":
    main()
