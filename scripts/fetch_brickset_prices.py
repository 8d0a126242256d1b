#!/usr/bin/env python3
"""Match the catalog to Brickset's Star Wars minifigure listing by name.

Scrapes the paged Brickset listing once (cached as brickset-prices.json) for
BrickLink id, name and current new/used values, resolves every catalog entry
against that pool with the name-matching cascade, and writes prices.json:
``{fig_id: {valueNew, valueUsed, bricklinkId}}`` for every matched entry.
"""

from __future__ import annotations

import argparse
import re
import sys
from dataclasses import dataclass
from html import unescape
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from name_matching import ExternalPriceRecord, MatchResult, NameMatcher, match_catalog
from refresh_common import (
    DEFAULT_CACHE_DIR,
    DEFAULT_CATALOG_JSON,
    DEFAULT_PRICES_JSON,
    FetchConfig,
    collapse_ws,
    fetch_text,
    load_json_array,
    log,
    maybe_sleep,
    parse_float,
    percent,
    price_record,
    write_json,
)


LISTING_URL_TEMPLATE = "https://brickset.com/minifigs/category-Star-Wars/page-{page}"
TOTAL_PAGES = 32
POOL_CACHE_NAME = "brickset-prices.json"
UNMATCHED_FULL_LISTING_LIMIT = 50
UNMATCHED_SAMPLE = 20

SOFT_BLOCK_MARKERS = (
    "cf-chl-",
    "/cdn-cgi/challenge-platform/",
    "attention required!",
    "checking your browser before accessing",
    "verify you are human",
)

ARTICLE_RE = re.compile(r"<article[^>]*>.*?</article>", re.IGNORECASE | re.DOTALL)
ID_SPAN_RE = re.compile(r"<span>(sw\d{4}[a-z]?):\s*</span>", re.IGNORECASE)
ID_LOOSE_RE = re.compile(r"\b(sw\d{4}[a-z]?)\b", re.IGNORECASE)
META_NAME_RE = re.compile(
    r"<div class=['\"]meta['\"]>.*?<h1><a[^>]*><span>[^<]*</span>\s*([^<]+)</a></h1>",
    re.IGNORECASE | re.DOTALL,
)
H1_NAME_RE = re.compile(r"<h1><a[^>]*>([^<]+)</a></h1>", re.IGNORECASE)
VALUE_NEW_RE = re.compile(r"<dt>Value new</dt>\s*<dd><a[^>]*>~?\$?([\d,]+\.?\d*)</a></dd>", re.IGNORECASE)
VALUE_USED_RE = re.compile(r"<dt>Value used</dt>\s*<dd><a[^>]*>~?\$?([\d,]+\.?\d*)</a></dd>", re.IGNORECASE)


@dataclass
class CrawlStats:
    pages_fetched: int = 0
    failed_pages: int = 0
    records_parsed: int = 0


def looks_like_soft_block(html: str) -> bool:
    lower = html.lower()
    return any(marker in lower for marker in SOFT_BLOCK_MARKERS)


def parse_listing_article(block: str) -> Optional[ExternalPriceRecord]:
    id_match = ID_SPAN_RE.search(block) or ID_LOOSE_RE.search(block)
    if not id_match:
        return None

    name_match = META_NAME_RE.search(block) or H1_NAME_RE.search(block)
    name = collapse_ws(unescape(name_match.group(1))) if name_match else ""

    new_match = VALUE_NEW_RE.search(block)
    used_match = VALUE_USED_RE.search(block)
    return ExternalPriceRecord(
        bricklink_id=id_match.group(1).lower(),
        name=name,
        value_new=parse_float(new_match.group(1)) if new_match else None,
        value_used=parse_float(used_match.group(1)) if used_match else None,
    )


def parse_listing_page(html: str) -> List[ExternalPriceRecord]:
    records: List[ExternalPriceRecord] = []
    for block in ARTICLE_RE.findall(html):
        parsed = parse_listing_article(block)
        if parsed is not None:
            records.append(parsed)
    return records


def scrape_listing(
    session: requests.Session,
    cfg: FetchConfig,
    *,
    pages: int,
    delay: float,
) -> Tuple[List[ExternalPriceRecord], CrawlStats]:
    stats = CrawlStats()
    pool: List[ExternalPriceRecord] = []
    for page in range(1, pages + 1):
        url = LISTING_URL_TEMPLATE.format(page=page)
        try:
            html = fetch_text(session, url, cfg, source="Brickset")
        except RuntimeError as exc:
            stats.failed_pages += 1
            print(f"[Brickset] page {page}/{pages}: {exc}", flush=True)
        else:
            stats.pages_fetched += 1
            records = parse_listing_page(html)
            if not records and looks_like_soft_block(html):
                stats.failed_pages += 1
                print(f"[Brickset] page {page}/{pages}: soft block detected", flush=True)
            pool.extend(records)
            stats.records_parsed += len(records)
            log(f"[Brickset] page {page}/{pages}: {len(records)} minifigs (total {len(pool)})", enabled=cfg.verbose)
        if page < pages:
            maybe_sleep(delay)
    return pool, stats


def load_pool_cache(path: Path) -> Optional[List[ExternalPriceRecord]]:
    if not path.exists():
        return None
    try:
        rows = load_json_array(path)
    except (OSError, ValueError):
        return None
    pool: List[ExternalPriceRecord] = []
    for row in rows:
        record = ExternalPriceRecord.from_json(row)
        if record is not None:
            pool.append(record)
    return pool


def write_pool_cache(path: Path, pool: Sequence[ExternalPriceRecord]) -> None:
    write_json(path, [record.to_json() for record in pool])


def pool_by_bricklink_id(pool: Sequence[ExternalPriceRecord]) -> Dict[str, ExternalPriceRecord]:
    return {record.bricklink_id: record for record in pool if record.bricklink_id}


def build_price_records(results: Dict[str, MatchResult]) -> Dict[str, Dict[str, Any]]:
    prices: Dict[str, Dict[str, Any]] = {}
    for fig_id, result in results.items():
        if result.record is None:
            continue
        prices[fig_id] = price_record(result.record.value_new, result.record.value_used, result.record.bricklink_id)
    return prices


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Match catalog minifigs to Brickset listing prices by name.")
    parser.add_argument("--catalog-json", default=DEFAULT_CATALOG_JSON, help="Catalog JSON path.")
    parser.add_argument("--prices-json", default=DEFAULT_PRICES_JSON, help="Prices JSON output path.")
    parser.add_argument("--cache-dir", default=DEFAULT_CACHE_DIR, help="Cache directory.")
    parser.add_argument("--pages", type=int, default=TOTAL_PAGES, help="Listing pages to scrape.")
    parser.add_argument("--delay", type=float, default=1.0, help="Delay between listing pages in seconds.")
    parser.add_argument("--timeout", type=float, default=25.0, help="HTTP timeout in seconds.")
    parser.add_argument("--retries", type=int, default=2, help="Retries per page.")
    parser.add_argument("--dry-run", action="store_true", help="Do not write prices.json.")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging.")
    return parser.parse_args(argv)


def main(argv: Sequence[str]) -> int:
    args = parse_args(argv)
    cfg = FetchConfig(timeout=max(1.0, args.timeout), retries=max(0, args.retries), verbose=bool(args.verbose))
    catalog_path = Path(args.catalog_json)
    prices_path = Path(args.prices_json)
    pool_path = Path(args.cache_dir) / POOL_CACHE_NAME

    if not catalog_path.exists():
        print(f"Missing catalog JSON: {catalog_path}", file=sys.stderr)
        return 1
    catalog = load_json_array(catalog_path)

    pool = load_pool_cache(pool_path)
    if pool is not None:
        print(f"[Brickset] loaded {len(pool)} cached entries", flush=True)
    else:
        pool, crawl = scrape_listing(requests.Session(), cfg, pages=max(1, args.pages), delay=args.delay)
        print(
            f"[Brickset] pages={crawl.pages_fetched} failed={crawl.failed_pages} records={crawl.records_parsed}",
            flush=True,
        )
        # Incomplete listings are not cached so the next run scrapes again.
        if crawl.failed_pages or not pool:
            print(f"[Brickset] listing incomplete; {pool_path.name} not written", flush=True)
        else:
            write_pool_cache(pool_path, pool)

    with_new = sum(1 for record in pool if record.value_new is not None)
    with_used = sum(1 for record in pool if record.value_used is not None)
    print(f"[Brickset] total={len(pool)} with_new={with_new} with_used={with_used}", flush=True)

    results, stats = match_catalog(catalog, NameMatcher(pool))
    prices = build_price_records(results)

    print(
        (
            f"[Match] exact={stats.exact} base_name={stats.base_name} weighted={stats.weighted} "
            f"levenshtein={stats.edit_distance} total={stats.matched}/{len(catalog)} "
            f"({percent(stats.matched, len(catalog))})"
        ),
        flush=True,
    )

    unmatched = [row for row in catalog if collapse_ws(row.get("id")) not in prices]
    if unmatched:
        shown = unmatched if len(unmatched) <= UNMATCHED_FULL_LISTING_LIMIT else unmatched[:UNMATCHED_SAMPLE]
        print(f"[Unmatched] {len(unmatched)} (showing {len(shown)})", flush=True)
        for row in shown:
            print(f"  {row.get('id')} | {row.get('name')}", flush=True)

    used_values = [record["valueUsed"] for record in prices.values() if record["valueUsed"] is not None]
    print(f"[Prices] with_used={len(used_values)}", flush=True)
    if used_values:
        print(f"[Prices] average_used=${sum(used_values) / len(used_values):.2f}", flush=True)

    if args.dry_run:
        print("[Dry run] prices not written", flush=True)
        return 0

    write_json(prices_path, prices)
    print(f"[Write] {prices_path}", flush=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
