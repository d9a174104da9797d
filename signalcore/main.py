"""SignalCore — CLI entry point.

Reads an OHLCV CSV, runs one evaluation cycle and prints the analysis as
JSON::

    python -m signalcore.main --csv bars.csv --symbol BTC/USDT --timeframe 1h
"""

import logging
import sys
from typing import Optional, Sequence

import pandas as pd

from signalcore.indicators.models import OHLCVBar
from signalcore.risk.stats_store import TradeStatsStore

logger = logging.getLogger("signalcore")

_OHLCV_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


def load_bars_csv(path: str) -> list[OHLCVBar]:
    """Load bars from a CSV with ``timestamp,open,high,low,close,volume`` columns.

    ``timestamp`` may be epoch milliseconds or any date string pandas can
    parse (interpreted as UTC).  Rows are sorted by timestamp.
    """
    df = pd.read_csv(path)
    df.columns = [c.strip().lower() for c in df.columns]
    missing = [c for c in _OHLCV_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"CSV {path} is missing column(s): {', '.join(missing)}")

    if pd.api.types.is_numeric_dtype(df["timestamp"]):
        df["timestamp"] = df["timestamp"].astype("int64")
    else:
        parsed = pd.to_datetime(df["timestamp"], utc=True)
        df["timestamp"] = (parsed - pd.Timestamp(0, tz="UTC")) // pd.Timedelta(milliseconds=1)

    df = df.sort_values("timestamp", kind="mergesort")
    return [
        OHLCVBar(
            timestamp=int(row.timestamp),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in df[_OHLCV_COLUMNS].itertuples(index=False)
    ]


def load_trades_csv(
    path: str, store: TradeStatsStore, symbol: str, timeframe: str
) -> int:
    """Feed a CSV of closed trades (``pnl`` column) into *store*."""
    df = pd.read_csv(path)
    if "pnl" not in df.columns:
        raise ValueError(f"CSV {path} has no 'pnl' column")
    for pnl in df["pnl"].astype(float):
        store.record_outcome(symbol, timeframe, float(pnl))
    return len(df)


# ── CLI ──────────────────────────────────────────────────────────────────


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    """Parse CLI arguments, run the pipeline and print JSON to stdout."""
    import argparse
    import asyncio
    import json

    from signalcore.config import load_config
    from signalcore.errors import SignalCoreError
    from signalcore.pipeline import SignalPipeline

    parser = argparse.ArgumentParser(description="SignalCore signal analysis")
    parser.add_argument("--csv", required=True, help="OHLCV CSV file")
    parser.add_argument("--symbol", required=True, help="Symbol label, e.g. BTC/USDT")
    parser.add_argument("--timeframe", default="1h", help="Bar timeframe (default: 1h)")
    parser.add_argument("--balance", type=float, help="Account balance override")
    parser.add_argument("--trades", help="CSV of closed trades with a 'pnl' column")
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Run the Monte Carlo risk simulation and include it in the output",
    )
    parser.add_argument("--env", help="Path to a .env file")
    args = parser.parse_args(argv)

    config = load_config(args.env)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    pipeline = SignalPipeline.from_config(config, with_simulation=args.simulate)
    try:
        bars = load_bars_csv(args.csv)
        logger.info("Loaded %d bars from %s", len(bars), args.csv)
        if args.trades:
            n = load_trades_csv(args.trades, pipeline.stats_store, args.symbol, args.timeframe)
            logger.info("Loaded %d closed trades from %s", n, args.trades)

        if args.simulate:
            result = asyncio.run(
                pipeline.analyse(
                    args.symbol,
                    args.timeframe,
                    bars,
                    account_balance=args.balance,
                    wait_for_simulation=True,
                )
            )
        else:
            result = pipeline.generate(
                args.symbol, args.timeframe, bars, account_balance=args.balance
            )
    except SignalCoreError as exc:
        logger.error("No signal available: %s", exc)
        return 1
    finally:
        if pipeline.simulation is not None:
            pipeline.simulation.close()

    json.dump(result.to_dict(), sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(run_cli())
