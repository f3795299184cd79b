#!/usr/bin/env python3
"""
DASH Experiment Statistics

Summarizes the sessions persisted by dash_server.py:
1. Walks {datadir}/dash/YYYY/MM/DD/neubot-dash-*.json.gz
2. Flattens every client iteration into a polars DataFrame
3. Reports per-session and overall throughput

Usage:
  python dash_stats.py --datadir /var/lib/dash
  python dash_stats.py --datadir /var/lib/dash --json
"""

from __future__ import annotations

import argparse
import gzip
import json
import sys
from pathlib import Path
from typing import Optional

import polars as pl

from dash_model import ProtocolError
from dash_storage import load_result


SESSION_SCHEMA = {
    "file": pl.Utf8,
    "srvr_timestamp": pl.Int64,
    "iteration": pl.Int64,
    "rate": pl.Int64,
    "received": pl.Int64,
    "elapsed": pl.Float64,
    "platform": pl.Utf8,
    "version": pl.Utf8,
}


def find_result_files(datadir: Path) -> list[Path]:
    return sorted((datadir / "dash").rglob("neubot-dash-*.json.gz"))


def load_sessions(datadir: str | Path, verbose: bool = False) -> pl.DataFrame:
    """
    Load every persisted session into one row per client iteration.

    Unreadable files are skipped with a warning.
    """
    rows = []
    for path in find_result_files(Path(datadir)):
        try:
            schema = load_result(path)
        except (OSError, EOFError, gzip.BadGzipFile, json.JSONDecodeError, ProtocolError) as e:
            print(f"Warning: skipping {path.name}: {e}")
            continue
        for c in schema.client:
            rows.append({
                "file": path.name,
                "srvr_timestamp": schema.srvr_timestamp,
                "iteration": c.iteration,
                "rate": c.rate,
                "received": c.received,
                "elapsed": c.elapsed,
                "platform": c.platform,
                "version": c.version,
            })
        if verbose:
            print(f"  Loaded {path.name}: {len(schema.client)} client iterations")

    df = pl.DataFrame(rows, schema=SESSION_SCHEMA)
    return df.with_columns(
        (pl.col("received") * 8 / 1000 / pl.col("elapsed")).alias("throughput_kbps")
    )


def summarize(df: pl.DataFrame) -> pl.DataFrame:
    """Per-session iteration count and median/max throughput in kbit/s."""
    return (
        df.group_by("file")
        .agg(
            pl.col("srvr_timestamp").first(),
            pl.len().alias("iterations"),
            pl.col("throughput_kbps").median().alias("median_kbps"),
            pl.col("throughput_kbps").max().alias("max_kbps"),
        )
        .sort("file")
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Summarize persisted DASH sessions")
    p.add_argument("--datadir", type=str, default=".", help="Server data directory")
    p.add_argument("--json", action="store_true", help="Print the summary as JSON")
    p.add_argument("--verbose", action="store_true")
    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    datadir = Path(args.datadir)
    if not (datadir / "dash").is_dir():
        print(f"Error: no DASH results under {datadir}", file=sys.stderr)
        return 1

    df = load_sessions(datadir, verbose=args.verbose)
    summary = summarize(df)

    if args.json:
        print(json.dumps(summary.to_dicts(), indent=2))
        return 0

    print("=" * 72)
    print("DASH SESSION SUMMARY")
    print("=" * 72)
    print(f"Sessions:              {summary.height}")
    print(f"Client iterations:     {df.height}")
    if df.height > 0:
        print(f"Median throughput:     {df['throughput_kbps'].median():.0f} kbit/s")
        print(f"Max throughput:        {df['throughput_kbps'].max():.0f} kbit/s")
    print("-" * 72)
    with pl.Config(tbl_rows=-1):
        print(summary)
    print("=" * 72)
    return 0


if __name__ == "__main__":
    sys.exit(main())
