"""
Script to run the export connector until interrupted
"""

import asyncio
import logging
import os
import signal
import sys

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings, validate_settings
from core.exceptions import BackoffExhaustedError, ConfigurationError
from core.logging import setup_logging
from ingestion.factory import make_runner

logger = logging.getLogger(__name__)


async def run_connector():
    """Run the export loop until SIGINT/SIGTERM or too many failures"""
    setup_logging()

    try:
        conf = validate_settings(settings)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    runner = make_runner(conf)
    engine = runner.warehouse.engine if runner.warehouse is not None else None

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        if conf.PIPELINE_MODE == "staged":
            await runner.run_staged(stop_event)
        else:
            await runner.run(stop_event)
    except BackoffExhaustedError as e:
        logger.critical(f"Giving up: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Export connector error: {str(e)}")
        sys.exit(1)
    finally:
        if engine is not None:
            await engine.dispose()


if __name__ == "__main__":
    asyncio.run(run_connector())
