#!/usr/bin/env python3
"""Correct BrickLink ids in prices.json from Rebrickable minifig pages.

Name matching can pick the wrong variant (several catalog entries end up on
one BrickLink id). This stage visits each catalog entry's own Rebrickable
page, pulls the BrickLink id out of the HTML, and then:

- overwrites ``bricklinkId`` where it differs, refreshing new/used from the
  Brickset pool entry for the corrected id when there is one
- adds records for entries that had no match at all
- renames catalog entries to the Brickset name for their (corrected) id

Page lookups are cached in rebrickable-bricklink-ids.json (flushed every 50
entries) so an interrupted run resumes. ``--unmatched-only`` limits the page
visits to entries that have no price record yet.
"""

from __future__ import annotations

import argparse
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

import requests

from fetch_brickset_prices import POOL_CACHE_NAME, load_pool_cache, pool_by_bricklink_id
from name_matching import ExternalPriceRecord
from refresh_common import (
    DEFAULT_CACHE_DIR,
    DEFAULT_CATALOG_JSON,
    DEFAULT_PRICES_JSON,
    FetchConfig,
    collapse_ws,
    fetch_text,
    has_price,
    load_json_array,
    load_prices,
    log,
    percent,
    price_record,
    write_json,
)
from resumable_cache import ResumableCache


REBRICKABLE_MINIFIG_URL = "https://rebrickable.com/minifigs/{fig_id}/"
ID_CACHE_NAME = "rebrickable-bricklink-ids.json"
ID_CACHE_FLUSH_EVERY = 50
FULL_SCAN_DELAY = 0.7
UNMATCHED_SCAN_DELAY = 0.8
# Unique BrickLink ids in prices.json before the first correction pass.
BASELINE_UNIQUE_IDS = 823
NAME_LISTING_LIMIT = 30


@dataclass(frozen=True)
class IdPattern:
    label: str
    regex: Pattern[str]

    def extract(self, html: str) -> Optional[str]:
        match = self.regex.search(html)
        if not match:
            return None
        for group in match.groups():
            if group:
                return group.lower()
        return None


def _pattern(label: str, pattern: str) -> IdPattern:
    return IdPattern(label=label, regex=re.compile(pattern, re.IGNORECASE))


# Most specific first; the loose forms only run when no explicit link exists.
ID_PATTERNS: List[IdPattern] = [
    _pattern("catalog-item-link", r"bricklink\.com/v2/catalog/catalogitem\.page\?M=([a-z0-9]+)"),
    _pattern("any-minifig-link", r"bricklink\.com[^\"]*[?&]M=([a-z0-9]+)"),
    _pattern("label-tag", r"BrickLink[:\s]+<[^>]*>([a-z]{2,3}\d{3,5}[a-z]?)<"),
    _pattern("label-text", r"BrickLink[:\s]*([a-z]{2,3}\d{3,5}[a-z]?)"),
    _pattern("data-attribute", r"data-bricklink-id=\"([^\"]+)\""),
    _pattern("table-row", r">([a-z]{2}\d{4}[a-z]?)</a>\s*</td>\s*</tr>\s*<tr[^>]*>\s*<td[^>]*>BrickLink"),
    _pattern("external-ids", r"External IDs[\s\S]{0,500}?BrickLink[\s\S]{0,200}?([a-z]{2,}\d{2,}[a-z]?)"),
]


@dataclass
class ReconcileStats:
    corrected: int = 0
    added: int = 0
    unchanged: int = 0
    no_id: int = 0


@dataclass
class NameStats:
    updated: int = 0
    not_found: int = 0
    missing: List[str] = field(default_factory=list)


def find_bricklink_id(html: str, patterns: Sequence[IdPattern] = ID_PATTERNS) -> Optional[Tuple[str, str]]:
    """Return ``(label, id)`` for the first pattern that matches."""
    for pattern in patterns:
        found = pattern.extract(html)
        if found:
            return pattern.label, found
    return None


def extract_bricklink_id(html: str, patterns: Sequence[IdPattern] = ID_PATTERNS) -> Optional[str]:
    match = find_bricklink_id(html, patterns)
    return match[1] if match else None


def select_targets(
    catalog: Sequence[Dict[str, Any]],
    prices: Dict[str, Dict[str, Any]],
    *,
    unmatched_only: bool,
) -> List[str]:
    targets: List[str] = []
    for row in catalog:
        fig_id = collapse_ws(row.get("id"))
        if not fig_id:
            continue
        if unmatched_only and fig_id in prices:
            continue
        targets.append(fig_id)
    return targets


def reconcile_ids(
    catalog: Sequence[Dict[str, Any]],
    prices: Dict[str, Dict[str, Any]],
    extracted: Dict[str, Optional[str]],
    pool_by_id: Dict[str, ExternalPriceRecord],
) -> ReconcileStats:
    stats = ReconcileStats()
    for row in catalog:
        fig_id = collapse_ws(row.get("id"))
        correct_id = extracted.get(fig_id)
        if not correct_id:
            stats.no_id += 1
            continue

        entry = pool_by_id.get(correct_id)
        existing = prices.get(fig_id)
        if existing is None:
            prices[fig_id] = price_record(
                entry.value_new if entry else None,
                entry.value_used if entry else None,
                correct_id,
            )
            stats.added += 1
            continue

        if existing.get("bricklinkId") == correct_id:
            stats.unchanged += 1
            continue

        value_new = entry.value_new if entry and entry.value_new is not None else existing.get("valueNew")
        value_used = entry.value_used if entry and entry.value_used is not None else existing.get("valueUsed")
        updated = dict(existing)
        updated.update(price_record(value_new, value_used, correct_id))
        prices[fig_id] = updated
        stats.corrected += 1
    return stats


def duplicate_ids(prices: Dict[str, Dict[str, Any]]) -> Tuple[int, Dict[str, int]]:
    counts: Dict[str, int] = {}
    for record in prices.values():
        bricklink_id = record.get("bricklinkId")
        if not bricklink_id:
            continue
        counts[bricklink_id] = counts.get(bricklink_id, 0) + 1
    duplicates = {bricklink_id: count for bricklink_id, count in counts.items() if count > 1}
    return len(counts), duplicates


def apply_catalog_names(
    catalog: Sequence[Dict[str, Any]],
    prices: Dict[str, Dict[str, Any]],
    pool_by_id: Dict[str, ExternalPriceRecord],
) -> NameStats:
    stats = NameStats()
    for row in catalog:
        fig_id = collapse_ws(row.get("id"))
        record = prices.get(fig_id)
        bricklink_id = record.get("bricklinkId") if record else None
        if not bricklink_id:
            stats.not_found += 1
            stats.missing.append(f"{fig_id} | no BrickLink id | {row.get('name')}")
            continue
        entry = pool_by_id.get(bricklink_id)
        if entry is None or not entry.name:
            stats.not_found += 1
            stats.missing.append(f"{fig_id} | {bricklink_id} not in Brickset | {row.get('name')}")
            continue
        if row.get("name") != entry.name:
            row["name"] = entry.name
            stats.updated += 1
    return stats


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Correct BrickLink ids from Rebrickable minifig pages.")
    parser.add_argument("--catalog-json", default=DEFAULT_CATALOG_JSON, help="Catalog JSON path.")
    parser.add_argument("--prices-json", default=DEFAULT_PRICES_JSON, help="Prices JSON path.")
    parser.add_argument("--cache-dir", default=DEFAULT_CACHE_DIR, help="Cache directory.")
    parser.add_argument(
        "--unmatched-only",
        action="store_true",
        help="Only visit catalog entries without a price record.",
    )
    parser.add_argument("--skip-names", action="store_true", help="Do not rename catalog entries.")
    parser.add_argument("--delay", type=float, default=None, help="Delay between page requests in seconds.")
    parser.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout in seconds.")
    parser.add_argument("--retries", type=int, default=1, help="Retries per page.")
    parser.add_argument(
        "--baseline-unique",
        type=int,
        default=BASELINE_UNIQUE_IDS,
        help="Previously known unique BrickLink id count, for the duplicate report.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Do not write prices/catalog.")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging.")
    return parser.parse_args(argv)


def main(argv: Sequence[str]) -> int:
    args = parse_args(argv)
    cfg = FetchConfig(timeout=max(1.0, args.timeout), retries=max(0, args.retries), verbose=bool(args.verbose))
    catalog_path = Path(args.catalog_json)
    prices_path = Path(args.prices_json)
    cache_dir = Path(args.cache_dir)

    if not catalog_path.exists():
        print(f"Missing catalog JSON: {catalog_path}", file=sys.stderr)
        return 1
    if not prices_path.exists():
        print(f"Missing prices JSON: {prices_path}", file=sys.stderr)
        return 1
    pool = load_pool_cache(cache_dir / POOL_CACHE_NAME)
    if pool is None:
        print(f"Missing Brickset cache: {cache_dir / POOL_CACHE_NAME}", file=sys.stderr)
        return 1

    catalog = load_json_array(catalog_path)
    prices = load_prices(prices_path)
    pool_by_id = pool_by_bricklink_id(pool)

    cache = ResumableCache.open(cache_dir / ID_CACHE_NAME, flush_every=ID_CACHE_FLUSH_EVERY, verbose=cfg.verbose)
    targets = select_targets(catalog, prices, unmatched_only=args.unmatched_only)
    todo = cache.pending(targets)
    delay = args.delay
    if delay is None:
        delay = UNMATCHED_SCAN_DELAY if args.unmatched_only else FULL_SCAN_DELAY

    print(
        (
            f"[Ids] catalog={len(catalog)} targets={len(targets)} cached={len(targets) - len(todo)} "
            f"to_scrape={len(todo)} est_minutes={int(len(todo) * delay / 60) + 1}"
        ),
        flush=True,
    )

    session = requests.Session()

    def scrape(fig_id: str) -> Optional[str]:
        html = fetch_text(session, REBRICKABLE_MINIFIG_URL.format(fig_id=fig_id), cfg, source="Rebrickable")
        match = find_bricklink_id(html)
        if match is None:
            log(f"[Ids] {fig_id}: no BrickLink id on page", enabled=cfg.verbose)
            return None
        label, bricklink_id = match
        log(f"[Ids] {fig_id} -> {bricklink_id} ({label})", enabled=cfg.verbose)
        return bricklink_id

    batch = cache.process(todo, scrape, delay=delay, errors=(RuntimeError,), label="Ids")
    found = sum(1 for fig_id in todo if cache.get(fig_id))
    print(
        f"[Ids] scraped={batch.fetched} with_id={found} errors={batch.failures} flushes={batch.flushes}",
        flush=True,
    )
    for fig_id, message in batch.errors[:10]:
        print(f"  {fig_id}: {message}", flush=True)

    extracted = {fig_id: cache.get(fig_id) for fig_id in targets}
    stats = reconcile_ids(catalog, prices, extracted, pool_by_id)
    print(
        (
            f"[Reconcile] corrected={stats.corrected} added={stats.added} "
            f"unchanged={stats.unchanged} no_id={stats.no_id}"
        ),
        flush=True,
    )

    unique_count, duplicates = duplicate_ids(prices)
    print(
        f"[Duplicates] unique_ids={unique_count} (baseline {args.baseline_unique}) duplicated_ids={len(duplicates)}",
        flush=True,
    )

    priced = sum(1 for row in catalog if has_price(prices.get(collapse_ws(row.get("id")))))
    print(f"[Prices] priced={priced}/{len(catalog)} ({percent(priced, len(catalog))})", flush=True)

    names: Optional[NameStats] = None
    if not args.skip_names:
        names = apply_catalog_names(catalog, prices, pool_by_id)
        print(f"[Names] updated={names.updated} not_found={names.not_found}", flush=True)
        if 0 < len(names.missing) <= NAME_LISTING_LIMIT:
            for line in names.missing:
                print(f"  {line}", flush=True)

    if args.dry_run:
        print("[Dry run] prices/catalog not written", flush=True)
        return 0

    write_json(prices_path, prices)
    print(f"[Write] {prices_path}", flush=True)
    if names is not None:
        write_json(catalog_path, catalog)
        print(f"[Write] {catalog_path}", flush=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
