"""
Command line entry points for the kline archive loader and the feature pipeline.

Global options (apply to all commands):
- --data-root DIR (overrides KLINE_DATA_ROOT)
- --no-verify (skip .CHECKSUM verification)

Usage (examples):
- kline-pipeline plan --symbol BTCUSDT --start 2025-01-15 --end 2025-03-03
- kline-pipeline load --symbol ETH/USDT --start 2025-02-01 --end 2025-02-02 --out eth_1s.parquet
- kline-pipeline audit --start 2025-01-01 --end 2025-03-01
- kline-pipeline sync-store --start 2025-01-01 --end 2025-02-01 --store data/binance/klines_1s.sqlite
- kline-pipeline schema --windows 5,15,60
- kline-pipeline features --start 2025-01-02 --end 2025-01-03 --gap-policy report_and_skip --out features.parquet
"""
from __future__ import annotations
import argparse
import json
import sys
from dataclasses import replace
from typing import List, Optional

from binance_klines import (
    BinanceSymbol,
    KlineLoadError,
    KlineLoadRequest,
    load_1s_klines,
    plan_required_archives,
    write_klines_parquet,
)
from features import (
    FeatureError,
    FeatureTransformConfig,
    FeatureTransformRequest,
    GapPolicy,
    build_feature_schema,
    transform_store_range_for_training,
    write_feature_parquet,
)
from kline_store import KlineStore
from pipeline_config import STORE_PATH, HistoricalKlinesConfig, iso_to_ms, ms_to_iso, setup_logging, utc_now_ms
from store_sync import audit_archive_gaps, day_floor_ms, sync_symbol_from_archives


def _config(args: argparse.Namespace) -> HistoricalKlinesConfig:
    cfg = HistoricalKlinesConfig.from_env()
    if args.data_root:
        cfg = replace(cfg, data_root=args.data_root)
    if args.no_verify:
        cfg = replace(cfg, verify_checksum=False)
    return cfg


def _symbols(raw: Optional[str]) -> List[BinanceSymbol]:
    if not raw:
        return list(BinanceSymbol)
    return [BinanceSymbol.parse(s) for s in raw.split(",") if s.strip()]


def _windows(raw: str) -> List[int]:
    return [int(w) for w in raw.split(",") if w.strip()]


def _end_ms(raw: Optional[str]) -> int:
    # Default end is the start of the current UTC day (latest complete archive day)
    return iso_to_ms(raw) if raw else day_floor_ms(utc_now_ms())


def cmd_plan(args: argparse.Namespace) -> int:
    cfg = _config(args)
    req = KlineLoadRequest(symbol=BinanceSymbol.parse(args.symbol), start_ts_ms_utc=iso_to_ms(args.start),
                           end_ts_ms_utc_exclusive=_end_ms(args.end))
    for a in plan_required_archives(req, cfg.base_url):
        print(f"{a.kind.value:8s} {ms_to_iso(a.period_start_ts_ms_utc)} {a.url}")
    return 0


def cmd_load(args: argparse.Namespace) -> int:
    logger = setup_logging()
    cfg = _config(args)
    req = KlineLoadRequest(symbol=BinanceSymbol.parse(args.symbol), start_ts_ms_utc=iso_to_ms(args.start),
                           end_ts_ms_utc_exclusive=_end_ms(args.end))
    result = load_1s_klines(req, cfg, logger=logger)
    cov = result.coverage
    print(json.dumps({
        "symbol": result.symbol.as_str(),
        "expected_points": cov.expected_points,
        "actual_points": cov.actual_points,
        "missing_points": cov.missing_points,
        "duplicate_points_removed": cov.duplicate_points_removed,
        "total_gap_ranges": cov.total_gap_ranges,
        "gap_ranges": cov.gap_ranges[:10],
    }, indent=2))
    if args.out:
        write_klines_parquet(result, args.out, logger)
    return 0


def cmd_audit(args: argparse.Namespace) -> int:
    logger = setup_logging()
    result = audit_archive_gaps(_symbols(args.symbols), iso_to_ms(args.start), _end_ms(args.end), _config(args), logger=logger)
    for sym, t in result.totals.items():
        print(f"TOTAL {sym} | expected={t.expected} actual={t.actual} missing={t.missing} dupes_removed={t.duplicates_removed}")
    print(f"initial_missing={result.initial_missing} remaining_missing={result.remaining_missing}")
    return 0 if result.remaining_missing == 0 else 1


def cmd_sync_store(args: argparse.Namespace) -> int:
    logger = setup_logging()
    cfg = _config(args)
    start_ms, end_ms = iso_to_ms(args.start), _end_ms(args.end)
    with KlineStore.open(args.store, logger) as store:
        for symbol in _symbols(args.symbols):
            sync_symbol_from_archives(store, symbol, start_ms, end_ms, cfg, strict=not args.allow_incomplete, logger=logger)
    logger.info("All symbols synced")
    return 0


def cmd_schema(args: argparse.Namespace) -> int:
    schema = build_feature_schema(FeatureTransformConfig(windows_seconds=_windows(args.windows),
                                                         max_duration_seconds=args.max_duration))
    print(json.dumps({
        "version": schema.version,
        "fingerprint": schema.fingerprint,
        "columns": schema.column_names,
    }, indent=2))
    return 0


def cmd_features(args: argparse.Namespace) -> int:
    logger = setup_logging()
    cfg = FeatureTransformConfig(
        windows_seconds=_windows(args.windows),
        max_duration_seconds=args.max_duration,
        gap_policy=GapPolicy(args.gap_policy),
    )
    req = FeatureTransformRequest(start_ts_ms_utc=iso_to_ms(args.start), end_ts_ms_utc_exclusive=_end_ms(args.end))
    schema, rows, report = transform_store_range_for_training(args.store, req, cfg, logger)
    print(json.dumps({
        "fingerprint": schema.fingerprint,
        "input_points": report.input_points,
        "output_points": report.output_points,
        "skipped_points": report.skipped_points,
        "gap_ranges": report.gap_ranges[:10],
        "first_error": report.first_error,
    }, indent=2))
    if args.out:
        write_feature_parquet(schema, rows, args.out, logger)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="kline-pipeline", description="Binance 1s kline archives and feature pipeline")
    p.add_argument("--data-root", default=None, help="Archive cache root (default from KLINE_DATA_ROOT)")
    p.add_argument("--no-verify", action="store_true", help="Skip .CHECKSUM verification")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_plan = sub.add_parser("plan", help="Print the archives covering a range")
    p_plan.add_argument("--symbol", required=True)
    p_plan.add_argument("--start", required=True, help="Start ISO8601, e.g. 2025-01-01 or 2025-01-01T00:00:00Z")
    p_plan.add_argument("--end", default=None, help="End ISO8601 (exclusive); default start of today UTC")
    p_plan.set_defaults(func=cmd_plan)

    p_load = sub.add_parser("load", help="Load one symbol and print its coverage report")
    p_load.add_argument("--symbol", required=True)
    p_load.add_argument("--start", required=True)
    p_load.add_argument("--end", default=None)
    p_load.add_argument("--out", default=None, help="Optional parquet output path")
    p_load.set_defaults(func=cmd_load)

    p_audit = sub.add_parser("audit", help="Audit archive coverage month by month and refill gaps")
    p_audit.add_argument("--symbols", default=None, help="Comma separated; default all")
    p_audit.add_argument("--start", required=True)
    p_audit.add_argument("--end", default=None)
    p_audit.set_defaults(func=cmd_audit)

    p_sync = sub.add_parser("sync-store", help="Fill the SQLite store from archives and assert completeness")
    p_sync.add_argument("--symbols", default=None)
    p_sync.add_argument("--start", required=True)
    p_sync.add_argument("--end", default=None)
    p_sync.add_argument("--store", default=STORE_PATH)
    p_sync.add_argument("--allow-incomplete", action="store_true")
    p_sync.set_defaults(func=cmd_sync_store)

    p_schema = sub.add_parser("schema", help="Print feature columns and fingerprint")
    p_schema.add_argument("--windows", default="5,15,60")
    p_schema.add_argument("--max-duration", type=int, default=86_400)
    p_schema.set_defaults(func=cmd_schema)

    p_feat = sub.add_parser("features", help="Transform a store range into a feature matrix")
    p_feat.add_argument("--start", required=True)
    p_feat.add_argument("--end", default=None)
    p_feat.add_argument("--store", default=STORE_PATH)
    p_feat.add_argument("--windows", default="5,15,60")
    p_feat.add_argument("--max-duration", type=int, default=86_400)
    p_feat.add_argument("--gap-policy", choices=[g.value for g in GapPolicy], default=GapPolicy.STRICT.value)
    p_feat.add_argument("--out", default=None)
    p_feat.set_defaults(func=cmd_features)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except (KlineLoadError, FeatureError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
