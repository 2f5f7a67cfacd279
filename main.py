#!/usr/bin/env python3
"""Entry point for the stablecoin stream service.

Runs either the chain monitor (poller plus sinks) or the WebSocket
gateway (stream consumer plus fanout) depending on ``--mode``.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # websockets logs every handshake at INFO
    logging.getLogger("websockets").setLevel(max(log_level, logging.WARNING))

# Get logger for this module
logger = logging.getLogger(__name__)

from stablecoin_stream.config import ServiceConfig
from stablecoin_stream.errors import StreamMonitorError
from stablecoin_stream.service import StreamService


async def main() -> None:
    """Main entry point for the stablecoin stream service.

    Parses startup arguments, loads configuration from environment,
    and runs the service until SIGINT/SIGTERM.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Stablecoin Stream - Real-time stablecoin Transfer monitor and WebSocket gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_URL                - JSON-RPC endpoint (default: https://mainnet.base.org)
  POLL_INTERVAL_SECS     - Chain polling interval (default: 2)
  BLOCKS_PER_BATCH       - Blocks handled per tick (default: 10)
  START_BLOCK            - First block to process (default: chain head)
  STABLECOINS            - SYMBOL:ADDRESS:DECIMALS list (default: Base USDC, USDT, DAI)
  REDIS_URL              - Redis URL for the durable stream (required for gateway)
  REDIS_STREAM_KEY       - Stream key (default: stablecoin:transactions)
  CONSUMER_GROUP         - Consumer group (default: websocket-publisher)
  CONSUMER_NAME          - Consumer name (default: consumer-<hostname>)
  WS_HOST / WS_PORT      - WebSocket listener (default: 0.0.0.0:8080)
  ENABLE_LOCAL_BROADCAST - Embedded WebSocket fanout in monitor mode (default: true)
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--mode",
        default=os.environ.get("MODE", "monitor"),
        choices=sorted(ServiceConfig.SUPPORTED_MODES),
        help="Run the chain monitor or the WebSocket gateway (default: monitor)"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)

    logger.info(f"=== Stablecoin Stream Starting ({args.mode.upper()}) ===")
    logger.info("Loading configuration from environment...")

    try:
        service: StreamService = StreamService.from_env(mode=args.mode)
        logger.info("Configuration loaded successfully")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, service.stop)

        await service.run()

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RPC_URL: JSON-RPC endpoint for the monitored chain")
        logger.error("  - STABLECOINS: SYMBOL:ADDRESS:DECIMALS entries")
        logger.error("  - REDIS_URL: Required in gateway mode")
        sys.exit(1)

    except StreamMonitorError as e:
        logger.error(f"Pipeline Error: {e}")
        sys.exit(1)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
