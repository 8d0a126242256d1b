#!/usr/bin/env python3
"""Run the whole catalog/price refresh in order.

Stages (each reads the previous stage's files, so any one can be rerun alone):
  1. fetch_catalog            Rebrickable CSV dumps -> catalog.json
  2. fetch_brickset_prices    Brickset listing + name matching -> prices.json
  3. fix_bricklink_ids        BrickLink ids from Rebrickable pages
  4. update_bricklink_prices  BrickLink API averages + manual overrides

Without ``--use-cache`` the cache directory is removed first, so every
resumable cache starts empty. Ends with a coverage report.
"""

from __future__ import annotations

import argparse
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence, Tuple

import fetch_brickset_prices
import fetch_catalog
import fix_bricklink_ids
import update_bricklink_prices
from refresh_common import (
    DEFAULT_CACHE_DIR,
    DEFAULT_CATALOG_JSON,
    DEFAULT_PRICES_JSON,
    collapse_ws,
    has_price,
    load_json_array,
    load_json_object,
    percent,
)


MISSING_LISTING_LIMIT = 10

StageMain = Callable[[Sequence[str]], int]


@dataclass
class ConsistencyReport:
    catalog_size: int = 0
    with_prices: int = 0
    missing: List[Tuple[str, str]] = field(default_factory=list)
    missing_count: int = 0

    @property
    def coverage(self) -> str:
        return percent(self.with_prices, self.catalog_size)


def consistency_report(
    catalog: Sequence[Dict[str, Any]],
    prices: Dict[str, Any],
    *,
    limit: int = MISSING_LISTING_LIMIT,
) -> ConsistencyReport:
    report = ConsistencyReport(catalog_size=len(catalog))
    for row in catalog:
        fig_id = collapse_ws(row.get("id"))
        record = prices.get(fig_id)
        if isinstance(record, dict) and has_price(record):
            report.with_prices += 1
            continue
        report.missing_count += 1
        if len(report.missing) < limit:
            report.missing.append((fig_id, str(row.get("name") or "")))
    return report


def print_consistency_report(report: ConsistencyReport) -> None:
    print("========================================", flush=True)
    print("[Refresh] complete", flush=True)
    print(f"[Refresh] catalog={report.catalog_size} minifigs", flush=True)
    print(f"[Refresh] prices={report.with_prices}/{report.catalog_size} ({report.coverage})", flush=True)
    if report.missing_count:
        print(f"[Refresh] missing={report.missing_count}", flush=True)
        for fig_id, name in report.missing:
            print(f"  {fig_id} | {name}", flush=True)
    print("========================================", flush=True)


def clear_cache_dir(cache_dir: Path) -> bool:
    if not cache_dir.exists():
        return False
    shutil.rmtree(cache_dir)
    return True


def build_stages(args: argparse.Namespace) -> List[Tuple[str, StageMain, List[str]]]:
    shared = ["--catalog-json", args.catalog_json, "--cache-dir", args.cache_dir]
    with_prices = shared + ["--prices-json", args.prices_json]
    if args.verbose:
        shared = shared + ["--verbose"]
        with_prices = with_prices + ["--verbose"]

    fix_argv = list(with_prices)
    if args.unmatched_only:
        fix_argv.append("--unmatched-only")

    return [
        ("Catalog from Rebrickable", fetch_catalog.main, shared),
        ("BrickLink ids from Brickset", fetch_brickset_prices.main, with_prices),
        ("BrickLink ids from Rebrickable pages", fix_bricklink_ids.main, fix_argv),
        ("Prices from BrickLink API", update_bricklink_prices.main, with_prices),
    ]


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Refresh catalog.json and prices.json end to end.")
    parser.add_argument("--catalog-json", default=DEFAULT_CATALOG_JSON, help="Catalog JSON path.")
    parser.add_argument("--prices-json", default=DEFAULT_PRICES_JSON, help="Prices JSON path.")
    parser.add_argument("--cache-dir", default=DEFAULT_CACHE_DIR, help="Cache directory.")
    parser.add_argument("--use-cache", action="store_true", help="Keep the cache directory and resume from it.")
    parser.add_argument(
        "--unmatched-only",
        action="store_true",
        help="Only look up BrickLink ids for entries without a price record.",
    )
    parser.add_argument("--verbose", action="store_true", help="Verbose logging.")
    return parser.parse_args(argv)


def main(argv: Sequence[str]) -> int:
    args = parse_args(argv)
    cache_dir = Path(args.cache_dir)

    if not args.use_cache and clear_cache_dir(cache_dir):
        print(f"[Refresh] cleared cache {cache_dir}", flush=True)

    stages = build_stages(args)
    for position, (label, stage_main, stage_argv) in enumerate(stages, start=1):
        print(f"=== Step {position}/{len(stages)}: {label} ===", flush=True)
        code = stage_main(stage_argv)
        if code != 0:
            print(f"Refresh failed at step {position} ({label}), exit code {code}", file=sys.stderr)
            return code

    catalog = load_json_array(Path(args.catalog_json))
    prices = load_json_object(Path(args.prices_json))
    print_consistency_report(consistency_report(catalog, prices))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
