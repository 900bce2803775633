"""
PadBuddy Orchestrator - device command orchestration and liveness service

Runs next to the web app's Firebase project. Dispatches operator and
scheduled commands to field devices through the Realtime Database, makes
sure every command completes, fails or times out, and tracks which devices
are online.
"""

import asyncio
import logging
import signal
import sys

from padbuddy.core.bootstrap import create_orchestrator
from padbuddy.utils.logger import setup_logging

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


async def main():
    """Main entry point"""
    orchestrator = create_orchestrator()
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()

    # Handle shutdown signals
    def signal_handler(sig):
        logger.info(f"Received signal {sig}")
        main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        await orchestrator.start()
    except asyncio.CancelledError:
        logger.info("Shutdown requested")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        raise
    finally:
        await orchestrator.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Orchestrator stopped by user")
    except Exception as e:
        logger.error(f"Orchestrator crashed: {e}", exc_info=True)
        sys.exit(1)
