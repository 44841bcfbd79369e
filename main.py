from __future__ import annotations

import asyncio
import os
import sys

from dotenv import load_dotenv

from rebalancer.common import log_event
from rebalancer.runtime import AppSettings, run_cycle, setup_logger
from rebalancer.storage import StorageSettings
from rebalancer.trading.errors import ConfigurationError
from rebalancer.trading.types import EXIT_CONFIG_ERROR


async def main() -> int:
    load_dotenv()
    logger = setup_logger(os.getenv("LOG_LEVEL", "INFO"))

    try:
        app_settings = AppSettings.from_env()
    except ConfigurationError as error:
        log_event(
            logger,
            level="critical",
            event="config_invalid",
            message="Configuration rejected at startup",
            error=str(error),
            problems=error.details.get("problems", []),
        )
        return EXIT_CONFIG_ERROR

    logger = setup_logger(app_settings.log_level)
    storage_settings = StorageSettings.from_env()
    exit_code = await run_cycle(
        logger=logger,
        settings=app_settings,
        storage_settings=storage_settings,
    )
    log_event(
        logger,
        level="info",
        event="process_exit",
        message="Rebalancer exiting",
        exit_code=exit_code,
    )
    return exit_code


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
