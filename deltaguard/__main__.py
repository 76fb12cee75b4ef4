"""CLI entry point for the IL prediction engine.

Usage::

    python3 -m deltaguard predict --price 2000 --lower 1000 --upper 4000 --volatility 0.5 --days 30
    python3 -m deltaguard realized --initial 2000 --current 4000
    python3 -m deltaguard curve --price 2000 --points 9
    python3 -m deltaguard backtest prices.csv --horizon-days 7 --half-width-bp 1500
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from typing import List

from deltaguard.backtest import load_price_csv, run_backtest
from deltaguard.config import EngineSettings, load_settings
from deltaguard.engine import PredictionEngine
from deltaguard.errors import DeltaGuardError
from deltaguard.fixed_point import format_scaled, to_scaled
from deltaguard.logging_setup import configure_logging
from deltaguard.simulation import il_curve, rebalance_decision, risk_level

DAY = 86_400


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python3 -m deltaguard",
        description="Predict impermanent loss and range-exit probability for a liquidity range",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    predict = sub.add_parser("predict", help="Expected IL over a horizon at a given volatility")
    predict.add_argument("--price", required=True, help="Current price (decimal)")
    predict.add_argument("--lower", required=True, help="Lower range bound (decimal)")
    predict.add_argument("--upper", required=True, help="Upper range bound (decimal)")
    predict.add_argument(
        "--volatility", required=True,
        help="Annualized volatility as a decimal fraction (0.5 = 50%%)",
    )
    predict.add_argument("--days", type=int, default=30, help="Horizon in days (default: 30)")
    predict.add_argument(
        "--fee-apy-bp", type=int, default=None,
        help="Fee APY in basis points; prints a stay-or-move recommendation",
    )

    realized = sub.add_parser("realized", help="Exact IL for a price move")
    realized.add_argument("--initial", required=True, help="Entry price (decimal)")
    realized.add_argument("--current", required=True, help="Current price (decimal)")

    curve = sub.add_parser("curve", help="IL across a range of price ratios")
    curve.add_argument("--price", default="1", help="Reference price (decimal, default: 1)")
    curve.add_argument("--points", type=int, default=25, help="Number of points (default: 25)")

    backtest = sub.add_parser("backtest", help="Replay a timestamp,price CSV")
    backtest.add_argument("csv", help="Path to CSV with timestamp and price columns")
    backtest.add_argument(
        "--horizon-days", type=int, default=7,
        help="Prediction horizon in days (default: 7)",
    )
    backtest.add_argument(
        "--half-width-bp", type=int, default=2000,
        help="Range half width in basis points (default: 2000)",
    )
    backtest.add_argument(
        "--update-interval", type=int, default=None,
        help="Minimum seconds between volatility recomputes",
    )
    backtest.add_argument("--ewma", action="store_true", help="Use EWMA variance")

    return parser


def _apply_overrides(settings: EngineSettings, args: argparse.Namespace) -> EngineSettings:
    """Apply CLI argument overrides to settings."""
    overrides = {}

    if args.verbose:
        overrides["log_level"] = "DEBUG"

    if getattr(args, "update_interval", None) is not None:
        overrides["min_update_interval_seconds"] = args.update_interval

    if getattr(args, "ewma", False):
        overrides["use_ewma"] = True

    if overrides:
        settings = replace(settings, **overrides)

    return settings


def _cmd_predict(settings: EngineSettings, args: argparse.Namespace) -> None:
    engine = PredictionEngine(settings)
    engine.set_manual_volatility(to_scaled(args.volatility))
    engine.set_override_enabled(True)

    result = engine.predict(
        to_scaled(args.price),
        to_scaled(args.lower),
        to_scaled(args.upper),
        args.days * DAY,
    )
    print(f"Exit probability:  {result.exit_probability / 100:.2f}%")
    print(f"Expected IL:       {result.expected_il / 100:.2f}%")
    print(f"Confidence:        {result.confidence / 100:.2f}%")
    print(f"Risk level:        {risk_level(result.expected_il).value}")
    if args.fee_apy_bp is not None:
        decision = rebalance_decision(args.fee_apy_bp, result.expected_il)
        print(decision.recommendation)


def _cmd_realized(engine: PredictionEngine, args: argparse.Namespace) -> None:
    il_bp = engine.calculate_realized_il(to_scaled(args.initial), to_scaled(args.current))
    print(f"Impermanent loss:  {il_bp / 100:.2f}%")


def _cmd_curve(args: argparse.Namespace) -> None:
    print(f"{'ratio':>8}  {'price':>16}  {'IL':>8}")
    for point in il_curve(to_scaled(args.price), points=args.points):
        print(
            f"{point.ratio_bp / 10_000:>8.2f}  {format_scaled(point.price, 4):>16}  "
            f"{point.il_bp / 100:>7.2f}%"
        )


def _cmd_backtest(settings: EngineSettings, args: argparse.Namespace) -> None:
    ticks = load_price_csv(args.csv)
    report = run_backtest(
        ticks,
        horizon_seconds=args.horizon_days * DAY,
        half_width_bp=args.half_width_bp,
        settings=settings,
    )
    print(f"\n{'='*60}")
    print("Backtest Summary")
    print(f"{'='*60}")
    print(f"Ticks:             {len(ticks)}")
    print(f"Predictions:       {report.predictions}")
    print(f"Outliers rejected: {report.outliers_rejected}")
    print(f"Rows skipped:      {report.duplicates_skipped}")
    print(f"Mean abs error:    {report.mean_abs_error_bp:.1f} bp")
    print(f"Exit hit rate:     {report.exit_hit_rate * 100:.1f}%")
    print(f"Mean expected IL:  {report.mean_expected_il_bp:.1f} bp")
    print(f"Mean realized IL:  {report.mean_realized_il_bp:.1f} bp")
    print(f"{'='*60}")


def main(argv: List[str] | None = None) -> int:
    """CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = _apply_overrides(load_settings(), args)
    configure_logging(settings.log_level)

    try:
        if args.command == "predict":
            _cmd_predict(settings, args)
        elif args.command == "realized":
            _cmd_realized(PredictionEngine(settings), args)
        elif args.command == "curve":
            _cmd_curve(args)
        elif args.command == "backtest":
            _cmd_backtest(settings, args)
    except (DeltaGuardError, ValueError) as exc:
        logging.getLogger(__name__).error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
