from __future__ import annotations

import argparse
import asyncio
import sys

from loguru import logger

from backtest.report import render_report
from backtest.runner import load_candles_csv, run_backtest
from dca.models import IntervalFrequency, StrategyDefinition
from dca.scheduler import WeekendBoost
from services.config_service import Settings
from services.context import AppContext


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level> {extra}"
)


def configure_logging(level: str, log_file: str = "") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level=level.upper(), rotation="10 MB", retention=5, enqueue=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dca", description="Recurring purchase engine")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="poll and execute due strategies until interrupted")
    sub.add_parser("tick", help="run a single scheduler tick")

    signal = sub.add_parser("signal", help="print the latest signal for an asset")
    signal.add_argument("asset")

    backtest = sub.add_parser("backtest", help="replay a fixed DCA over a candle CSV")
    backtest.add_argument("csv", help="CSV with timestamp,open,high,low,close,volume")
    backtest.add_argument("--amount", type=float, required=True, help="amount per purchase")
    backtest.add_argument("--every", default="1d", help="interval such as 4h, 1d or 1w")
    backtest.add_argument("--asset-in", default="USDT")
    backtest.add_argument("--asset-out", default="BTC")
    backtest.add_argument("--budget", type=float, default=None, help="stop after investing this much")
    backtest.add_argument("--value-averaging", action="store_true")
    backtest.add_argument("--weekend-boost", action="store_true")
    backtest.add_argument("--fee-bps", type=float, default=0.0)
    return parser


def backtest_command(args: argparse.Namespace, settings: Settings) -> str:
    definition = StrategyDefinition(
        owner="backtest",
        asset_in=args.asset_in,
        asset_out=args.asset_out,
        per_execution_amount=args.amount,
        frequency=IntervalFrequency.parse(args.every),
        limits={"max_total_invested": args.budget},
        advanced={"value_averaging": args.value_averaging, "weekend_boost": args.weekend_boost},
    )
    boost = WeekendBoost(settings.WEEKEND_BOOST_MULTIPLIER, settings.weekend_boost_days())
    result = run_backtest(definition, load_candles_csv(args.csv), fee_bps=args.fee_bps, boost=boost)
    return render_report(result.report, title=f"DCA {args.amount:g} {args.asset_in} -> {args.asset_out} every {args.every}")


async def run_command(args: argparse.Namespace, settings: Settings) -> None:
    async with AppContext(settings) as ctx:
        if args.command == "tick":
            summary = await ctx.orchestrator.run_once()
            logger.info("Tick summary: {}", summary)
        elif args.command == "signal":
            signal = await ctx.orchestrator.get_signal(args.asset)
            print(f"{signal.asset}: {signal.direction} ({signal.strength:.0f}) {', '.join(signal.contributing_indicators)}")
        else:
            await ctx.orchestrator.run_forever()


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = Settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    if args.command == "backtest":
        print(backtest_command(args, settings))
        return
    try:
        asyncio.run(run_command(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
