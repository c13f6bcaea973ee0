#!/usr/bin/env python3
"""
Main entry point for the market-making agent.

Usage:
    python scripts/run_bot.py

    # Or with custom config:
    python scripts/run_bot.py --config config/settings.yaml
"""

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import structlog
from dotenv import load_dotenv

from perp_mm.config.loader import load_config
from perp_mm.core.errors import ConfigError
from perp_mm.orchestrator import Orchestrator
from perp_mm.security.signer import LocalSigner
from perp_mm.utils.log_config import setup_logging


async def run(orchestrator: Orchestrator) -> int:
    """Run until SIGINT/SIGTERM, then shut down cleanly."""
    logger = structlog.get_logger(__name__)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    if not await orchestrator.start():
        logger.error("agent_start_failed")
        await orchestrator.close()
        return 1

    await stop.wait()
    logger.info("shutdown_requested")
    await orchestrator.close()
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="perp-mm - Perpetual market-making agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with default config
    python scripts/run_bot.py

    # Run with custom config
    python scripts/run_bot.py --config config/custom_settings.yaml

    # Observe markets and risk without quoting
    python scripts/run_bot.py --dry-run
        """,
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: $PERP_MM_CONFIG or config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: $LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Disable quoting and optimization; connect, track and report only",
    )

    args = parser.parse_args()

    # Load environment variables
    load_dotenv()

    setup_logging(args.log_level or os.environ.get("LOG_LEVEL", "INFO"))
    logger = structlog.get_logger(__name__)

    config_path = args.config or os.environ.get("PERP_MM_CONFIG", "config/settings.yaml")
    logger.info("starting_agent", config=config_path, dry_run=args.dry_run)

    wallet = os.environ.get("WALLET_ADDRESS")
    if not wallet:
        logger.error(
            "missing_environment_variables",
            missing=["WALLET_ADDRESS"],
            hint="Copy .env.example to .env and fill in your wallet address",
        )
        sys.exit(1)

    overrides = {"wallet_address": wallet}
    if args.dry_run:
        overrides["market_making"] = {"enabled": False}
        overrides["optimization"] = {"enabled": False}
    try:
        config = load_config(config_path, **overrides)
    except ConfigError as e:
        logger.error("invalid_configuration", error=str(e), path=e.path)
        sys.exit(1)

    signer = LocalSigner(wallet, secret=os.environ.get("SIGNER_SECRET", ""))
    orchestrator = Orchestrator(config, signer)
    sys.exit(asyncio.run(run(orchestrator)))


if __name__ == "__main__":
    main()
