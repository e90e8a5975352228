#!/usr/bin/env python3
"""
Run the perpetual funding rate arbitrage bot.

Opens a delta-neutral LONG/SHORT pair across the two configured venues
when the funding spread pays for the entry costs, keeps collateral
balanced while the trade is open, and closes when the spread inverts.

Usage:
    python scripts/run_arbitrage.py
    python scripts/run_arbitrage.py --config config.yaml --symbol ETH --leverage 3
    python scripts/run_arbitrage.py --fee-recipient 0xabc... --fee-ratio 0.1 --debug
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from common import init_module
from src.perp_arbitrage import (
    ArbConfig,
    ArbitrageLoop,
    RetryExhaustedError,
    StateFileError,
    StateStore,
    TradeEngine,
)
from src.perp_arbitrage.venues import build_venues

logger = logging.getLogger("perp_arb.runner")


def apply_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Overlay command-line flags on the loaded configuration."""
    trading = dict(config.get("trading", {}) or {})
    fees = dict(config.get("fees", {}) or {})
    state = dict(config.get("state", {}) or {})

    if args.symbol is not None:
        trading["symbol"] = args.symbol
    if args.leverage is not None:
        trading["leverage"] = args.leverage
    if args.rebalance_threshold is not None:
        trading["rebalance_threshold"] = args.rebalance_threshold
    if args.min_profit_time is not None:
        trading["min_profit_time"] = args.min_profit_time
    if args.period is not None:
        trading["period"] = args.period
    if args.fee_recipient is not None:
        fees["recipient"] = args.fee_recipient
    if args.fee_ratio is not None:
        fees["ratio"] = args.fee_ratio
    if args.state is not None:
        state["path"] = args.state

    merged = dict(config)
    merged.update({"trading": trading, "fees": fees, "state": state})
    return merged


async def run_arbitrage(arb_config: ArbConfig) -> None:
    """Build the venues and run the loop until stopped or fatal."""
    venues, wallet, converter = build_venues(arb_config)
    engine = TradeEngine(venues, wallet, converter, arb_config)
    store = StateStore(arb_config.state_file)
    arb_loop = ArbitrageLoop(engine, store, period=arb_config.period)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, arb_loop.stop)

    try:
        await arb_loop.run()
    finally:
        for venue in venues.values():
            await venue.close()


def main():
    parser = argparse.ArgumentParser(
        description="Run the perpetual funding rate arbitrage bot"
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to config file",
    )
    parser.add_argument("--symbol", type=str, help="Base asset to trade (e.g. ETH)")
    parser.add_argument("--leverage", type=float, help="Leverage applied to both legs")
    parser.add_argument(
        "--rebalance-threshold",
        type=float,
        help="Relative collateral imbalance that triggers a transfer (e.g. 0.1)",
    )
    parser.add_argument(
        "--min-profit-time",
        type=float,
        help="Seconds the spread must pay for entry costs",
    )
    parser.add_argument("--fee-recipient", type=str, help="Address receiving the profit fee")
    parser.add_argument("--fee-ratio", type=float, help="Fraction of profit sent as fee")
    parser.add_argument("--period", type=float, help="Seconds between iterations")
    parser.add_argument("--state", type=str, help="Path to the JSON state file")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    try:
        config, _ = init_module(args.config, debug=args.debug)
        arb_config = ArbConfig.from_config(apply_overrides(config, args))
    except (FileNotFoundError, ValueError) as e:
        logging.basicConfig(level=logging.INFO)
        logger.error("Invalid configuration: %s", e)
        sys.exit(1)

    logger.info(
        "Starting arbitrage: symbol=%s leverage=%.2fx state=%s",
        arb_config.symbol,
        arb_config.leverage,
        arb_config.state_file,
    )

    try:
        asyncio.run(run_arbitrage(arb_config))
    except RetryExhaustedError as e:
        logger.critical("Fatal: %s", e)
        sys.exit(1)
    except StateFileError as e:
        logger.error("Cannot resume: %s", e)
        sys.exit(1)
    except ValueError as e:
        logger.error("Invalid venue configuration: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
