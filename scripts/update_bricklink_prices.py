#!/usr/bin/env python3
"""Overwrite matched prices with BrickLink price guide averages.

For every distinct BrickLink id in prices.json the script asks the BrickLink
store API for the 6-month sold average, new and used as separate calls:

  GET /items/MINIFIG/{no}/price?guide_type=sold&new_or_used=N|U&currency_code=USD

and falls back to the current stock average when neither sold call has data.
Results are cached per BrickLink id in bricklink-api-prices.json (flushed every
100 ids), so a rerun only asks for ids it has not seen.

Merge rules, per catalog id:
- an API result with a value for either condition replaces both values
- an empty or failed API result keeps the values already on file
- manual overrides only fill records that still have no value at all
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import requests
from requests_oauthlib import OAuth1

from refresh_common import (
    DEFAULT_CACHE_DIR,
    DEFAULT_CATALOG_JSON,
    DEFAULT_PRICES_JSON,
    FetchConfig,
    collapse_ws,
    has_price,
    load_json_array,
    load_prices,
    log,
    maybe_sleep,
    parse_float,
    parse_int,
    percent,
    write_json,
)
from resumable_cache import ResumableCache


BRICKLINK_API_BASE_URL = "https://api.bricklink.com/api/store/v1"
ITEM_TYPE = "MINIFIG"
CURRENCY_CODE = "USD"
API_CACHE_NAME = "bricklink-api-prices.json"
API_CACHE_FLUSH_EVERY = 100
PAIR_DELAY = 0.3
ITEM_DELAY = 0.4
NO_PRICE_LISTING_LIMIT = 20
ERROR_LISTING_LIMIT = 10
SAMPLE_SIZE = 5

GUIDE_SOLD = "sold"
GUIDE_STOCK = "stock"
CONDITION_NEW = "N"
CONDITION_USED = "U"

AUTH_HINT = "Check BRICKLINK_CONSUMER_KEY/SECRET and BRICKLINK_TOKEN_VALUE/SECRET."

# Big figs and creatures BrickLink has no sold data for. Last verified Feb 2026.
MANUAL_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "fig-003838": {"valueNew": 53.74, "valueUsed": 38.00, "bricklinkId": "wampa"},
    "fig-011198": {"valueNew": 53.74, "valueUsed": 38.00, "bricklinkId": "wampa"},
    "fig-014399": {"valueNew": 18.00, "valueUsed": 12.00, "bricklinkId": "porg06"},
    "fig-014402": {"valueNew": 15.00, "valueUsed": 10.00, "bricklinkId": "porg03"},
    "fig-014403": {"valueNew": 20.00, "valueUsed": 14.00, "bricklinkId": "porg02"},
    "fig-014404": {"valueNew": 15.00, "valueUsed": 10.00, "bricklinkId": "porg01"},
}


class BrickLinkAuthError(Exception):
    """Credentials were rejected; every further call would fail the same way."""


@dataclass
class MergeStats:
    updated: int = 0
    kept: int = 0
    untouched: int = 0


@dataclass
class OverrideStats:
    applied: int = 0
    already_priced: int = 0


@dataclass
class ReconcileReport:
    fetched: int = 0
    with_prices: int = 0
    no_prices: List[str] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)
    merge: MergeStats = field(default_factory=MergeStats)
    overrides: OverrideStats = field(default_factory=OverrideStats)


class BrickLinkClient:
    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        token_value: str,
        token_secret: str,
        timeout: float,
        retries: int,
        verbose: bool,
        base_url: str = BRICKLINK_API_BASE_URL,
        currency_code: str = CURRENCY_CODE,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = max(1.0, timeout)
        self.retries = max(0, retries)
        self.verbose = verbose
        self.currency_code = currency_code
        self.session = requests.Session()
        self.oauth = OAuth1(
            consumer_key,
            consumer_secret,
            token_value,
            token_secret,
            signature_method="HMAC-SHA1",
            signature_type="AUTH_HEADER",
        )

    def fetch_guide(self, item_no: str, guide_type: str, condition: str) -> Dict[str, Any]:
        """Return the ``data`` object of one price guide call.

        Raises BrickLinkAuthError on HTTP 401 / meta code 401 and RuntimeError
        for anything else that leaves no usable payload.
        """
        url = f"{self.base_url}/items/{ITEM_TYPE}/{quote(item_no, safe='')}/price"
        params = {
            "guide_type": guide_type,
            "new_or_used": condition,
            "currency_code": self.currency_code,
        }
        label = f"{item_no} {guide_type}/{condition}"

        attempt = 0
        while True:
            attempt += 1
            try:
                response = self.session.get(
                    url,
                    params=params,
                    auth=self.oauth,
                    timeout=self.timeout,
                    headers={"Accept": "application/json"},
                )
            except requests.RequestException as exc:
                if attempt > self.retries:
                    raise RuntimeError(f"BrickLink: request failed {label}: {exc}") from exc
                time.sleep(min(8.0, 1.5 * attempt))
                continue

            if response.status_code == 429:
                if attempt > self.retries:
                    raise RuntimeError(f"BrickLink: HTTP 429 {label}")
                retry_after = parse_float(response.headers.get("Retry-After"))
                wait = retry_after if retry_after and retry_after > 0 else min(30.0, 5.0 * attempt)
                log(f"[API] HTTP 429 {label}; waiting {wait:.0f}s", enabled=self.verbose)
                time.sleep(wait)
                continue

            if response.status_code >= 500:
                if attempt > self.retries:
                    raise RuntimeError(f"BrickLink: HTTP {response.status_code} {label}")
                time.sleep(min(15.0, 2.0 * attempt))
                continue

            if response.status_code == 401:
                raise BrickLinkAuthError(f"BrickLink API authentication failed (HTTP 401). {AUTH_HINT}")
            if response.status_code >= 400:
                raise RuntimeError(f"BrickLink: HTTP {response.status_code} {label}")

            try:
                payload = response.json()
            except ValueError as exc:
                raise RuntimeError(f"BrickLink: invalid JSON {label}") from exc

            meta = payload.get("meta") if isinstance(payload, dict) else None
            if isinstance(meta, dict):
                code = parse_int(meta.get("code"))
                if code == 401:
                    message = collapse_ws(meta.get("message")) or "meta code 401"
                    raise BrickLinkAuthError(f"BrickLink API authentication failed ({message}). {AUTH_HINT}")
                if code is not None and code >= 400:
                    message = collapse_ws(meta.get("message") or meta.get("description"))
                    raise RuntimeError(f"BrickLink: meta code={code} {label} {message}".rstrip())

            data = payload.get("data") if isinstance(payload, dict) else None
            if not isinstance(data, dict):
                raise RuntimeError(f"BrickLink: missing data object {label}")
            return data


def guide_average(guide: Optional[Dict[str, Any]], guide_type: str) -> Optional[float]:
    if not guide:
        return None
    # Sold guides prefer the quantity-weighted average; stock guides only use avg_price.
    fields = ("qty_avg_price", "avg_price") if guide_type == GUIDE_SOLD else ("avg_price",)
    for name in fields:
        value = parse_float(guide.get(name))
        if value is not None and value > 0:
            return round(value, 2)
    return None


def fetch_price_pair(
    client: BrickLinkClient,
    item_no: str,
    *,
    pair_delay: float = PAIR_DELAY,
) -> Dict[str, Optional[float]]:
    """Sold averages for new and used, falling back to stock averages.

    A failed lookup counts as "no data" for that condition. When every lookup
    that was attempted failed, RuntimeError is raised so the id is cached as a
    failure rather than as an empty result.
    """
    attempted = 0
    failed: List[str] = []

    def lookup(guide_type: str, condition: str) -> Optional[float]:
        nonlocal attempted
        attempted += 1
        try:
            guide = client.fetch_guide(item_no, guide_type, condition)
        except RuntimeError as exc:
            failed.append(str(exc))
            log(f"[API] {exc}", enabled=client.verbose)
            return None
        return guide_average(guide, guide_type)

    avg_new = lookup(GUIDE_SOLD, CONDITION_NEW)
    maybe_sleep(pair_delay)
    avg_used = lookup(GUIDE_SOLD, CONDITION_USED)

    if avg_new is None and avg_used is None:
        avg_new = lookup(GUIDE_STOCK, CONDITION_NEW)
        maybe_sleep(pair_delay)
        avg_used = lookup(GUIDE_STOCK, CONDITION_USED)

    if failed and len(failed) == attempted:
        raise RuntimeError(failed[-1])
    return {"avgNew": avg_new, "avgUsed": avg_used}


def ids_to_fig_ids(prices: Dict[str, Dict[str, Any]]) -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = {}
    for fig_id, record in prices.items():
        bricklink_id = collapse_ws(record.get("bricklinkId"))
        if bricklink_id:
            out.setdefault(bricklink_id, []).append(fig_id)
    return out


def merge_authoritative(
    prices: Dict[str, Dict[str, Any]],
    api_results: Dict[str, Optional[Dict[str, Any]]],
) -> MergeStats:
    stats = MergeStats()
    for fig_id, record in prices.items():
        bricklink_id = collapse_ws(record.get("bricklinkId"))
        result = api_results.get(bricklink_id) if bricklink_id else None
        if not result:
            stats.untouched += 1
            continue
        avg_new = result.get("avgNew")
        avg_used = result.get("avgUsed")
        if avg_new is not None or avg_used is not None:
            updated = dict(record)
            updated["valueNew"] = avg_new
            updated["valueUsed"] = avg_used
            prices[fig_id] = updated
            stats.updated += 1
        elif has_price(record):
            stats.kept += 1
        else:
            stats.untouched += 1
    return stats


def apply_manual_overrides(
    prices: Dict[str, Dict[str, Any]],
    overrides: Dict[str, Dict[str, Any]],
) -> OverrideStats:
    stats = OverrideStats()
    for fig_id, override in overrides.items():
        existing = prices.get(fig_id)
        if existing is not None and has_price(existing):
            stats.already_priced += 1
            continue
        prices[fig_id] = {**(existing or {}), **override}
        stats.applied += 1
    return stats


def count_result(report: ReconcileReport, bricklink_id: str, value: Dict[str, Optional[float]]) -> None:
    if value.get("avgNew") is not None or value.get("avgUsed") is not None:
        report.with_prices += 1
    else:
        report.no_prices.append(bricklink_id)


def reconcile(
    prices: Dict[str, Dict[str, Any]],
    fetch: Callable[[str], Dict[str, Optional[float]]],
    overrides: Dict[str, Dict[str, Any]],
    *,
    cache: ResumableCache,
    delay: float = ITEM_DELAY,
    report: Optional[ReconcileReport] = None,
) -> Tuple[Dict[str, Dict[str, Any]], ReconcileReport]:
    """Fetch uncached ids through ``cache``, merge, then apply overrides.

    Counts are added to ``report`` when given, so items fetched before the
    batch (the credential check) show up in the same summary.
    BrickLinkAuthError propagates (the cache is flushed first).
    """
    if report is None:
        report = ReconcileReport()
    by_id = ids_to_fig_ids(prices)

    def on_result(bricklink_id: str, value: Dict[str, Optional[float]]) -> None:
        count_result(report, bricklink_id, value)

    batch = cache.process(
        list(by_id),
        fetch,
        delay=delay,
        errors=(RuntimeError, ValueError),
        label="API",
        on_result=on_result,
    )
    report.fetched += batch.fetched
    report.errors.extend(batch.errors)

    merged = {fig_id: dict(record) for fig_id, record in prices.items()}
    api_results = {bricklink_id: cache.get(bricklink_id) for bricklink_id in by_id}
    report.merge = merge_authoritative(merged, api_results)
    report.overrides = apply_manual_overrides(merged, overrides)
    return merged, report


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply BrickLink price guide averages to prices.json.")
    parser.add_argument("--catalog-json", default=DEFAULT_CATALOG_JSON, help="Catalog JSON path.")
    parser.add_argument("--prices-json", default=DEFAULT_PRICES_JSON, help="Prices JSON path.")
    parser.add_argument("--cache-dir", default=DEFAULT_CACHE_DIR, help="Cache directory.")

    parser.add_argument("--bricklink-base-url", default=BRICKLINK_API_BASE_URL, help="BrickLink API base URL.")
    parser.add_argument("--consumer-key", default=os.getenv("BRICKLINK_CONSUMER_KEY", ""), help="BrickLink consumer key.")
    parser.add_argument(
        "--consumer-secret",
        default=os.getenv("BRICKLINK_CONSUMER_SECRET", ""),
        help="BrickLink consumer secret.",
    )
    parser.add_argument(
        "--token-value",
        default=os.getenv("BRICKLINK_TOKEN_VALUE") or os.getenv("BRICKLINK_TOKEN", ""),
        help="BrickLink token value.",
    )
    parser.add_argument("--token-secret", default=os.getenv("BRICKLINK_TOKEN_SECRET", ""), help="BrickLink token secret.")

    parser.add_argument("--timeout", type=float, default=15.0, help="HTTP timeout in seconds.")
    parser.add_argument("--retries", type=int, default=1, help="Retries after first attempt.")
    parser.add_argument("--pair-delay", type=float, default=PAIR_DELAY, help="Delay between new/used calls.")
    parser.add_argument("--delay", type=float, default=ITEM_DELAY, help="Delay between BrickLink ids.")
    parser.add_argument("--dry-run", action="store_true", help="Do not write prices.json.")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging.")
    return parser.parse_args(argv)


def print_report(report: ReconcileReport, id_map: Dict[str, List[str]]) -> None:
    print(
        (
            f"[API] fetched={report.fetched} with_prices={report.with_prices} "
            f"no_prices={len(report.no_prices)} errors={len(report.errors)}"
        ),
        flush=True,
    )
    for bricklink_id in report.no_prices[:NO_PRICE_LISTING_LIMIT]:
        fig_ids = id_map.get(bricklink_id) or ["?"]
        print(f"  no price data: {bricklink_id} ({fig_ids[0]})", flush=True)
    for bricklink_id, message in report.errors[:ERROR_LISTING_LIMIT]:
        print(f"  error: {bricklink_id}: {message}", flush=True)
    print(f"[Merge] applied={report.merge.updated} kept_existing={report.merge.kept}", flush=True)
    print(
        f"[Overrides] applied={report.overrides.applied} already_priced={report.overrides.already_priced}",
        flush=True,
    )


def main(argv: Sequence[str]) -> int:
    args = parse_args(argv)

    required = {
        "BRICKLINK_CONSUMER_KEY": collapse_ws(args.consumer_key),
        "BRICKLINK_CONSUMER_SECRET": collapse_ws(args.consumer_secret),
        "BRICKLINK_TOKEN_VALUE": collapse_ws(args.token_value),
        "BRICKLINK_TOKEN_SECRET": collapse_ws(args.token_secret),
    }
    missing = [key for key, value in required.items() if not value]
    if missing:
        print("Missing BrickLink credentials: " + ", ".join(missing), file=sys.stderr)
        return 1

    catalog_path = Path(args.catalog_json)
    prices_path = Path(args.prices_json)
    if not catalog_path.exists():
        print(f"Missing catalog JSON: {catalog_path}", file=sys.stderr)
        return 1
    if not prices_path.exists():
        print(f"Missing prices JSON: {prices_path}", file=sys.stderr)
        return 1

    cfg = FetchConfig(timeout=max(1.0, args.timeout), retries=max(0, args.retries), verbose=bool(args.verbose))
    client = BrickLinkClient(
        consumer_key=required["BRICKLINK_CONSUMER_KEY"],
        consumer_secret=required["BRICKLINK_CONSUMER_SECRET"],
        token_value=required["BRICKLINK_TOKEN_VALUE"],
        token_secret=required["BRICKLINK_TOKEN_SECRET"],
        timeout=cfg.timeout,
        retries=cfg.retries,
        verbose=cfg.verbose,
        base_url=args.bricklink_base_url,
    )

    catalog = load_json_array(catalog_path)
    prices = load_prices(prices_path)
    cache = ResumableCache.open(
        Path(args.cache_dir) / API_CACHE_NAME,
        flush_every=API_CACHE_FLUSH_EVERY,
        verbose=cfg.verbose,
    )
    id_map = ids_to_fig_ids(prices)
    todo = cache.pending(id_map)
    per_item = 2 * max(0.0, args.pair_delay) + max(0.0, args.delay)
    print(
        (
            f"[API] catalog={len(catalog)} bricklink_ids={len(id_map)} "
            f"cached={len(id_map) - len(todo)} to_fetch={len(todo)} est_minutes={int(len(todo) * per_item / 60) + 1}"
        ),
        flush=True,
    )

    def fetch(bricklink_id: str) -> Dict[str, Optional[float]]:
        return fetch_price_pair(client, bricklink_id, pair_delay=args.pair_delay)

    # Fail fast on invalid BrickLink OAuth credentials.
    report = ReconcileReport()
    if todo:
        first_id = todo[0]
        cache.begin(first_id)
        try:
            result = fetch(first_id)
        except BrickLinkAuthError as exc:
            print(str(exc), file=sys.stderr)
            return 1
        except RuntimeError as exc:
            cache.record_failure(first_id)
            report.errors.append((first_id, str(exc)))
            print(f"[API] credential check {first_id}: {exc}", flush=True)
        else:
            cache.record_success(first_id, result)
            report.fetched += 1
            count_result(report, first_id, result)
            print(f"[API] credential check {first_id}: new={result['avgNew']} used={result['avgUsed']}", flush=True)

    try:
        merged, report = reconcile(
            prices, fetch, MANUAL_OVERRIDES, cache=cache, delay=args.delay, report=report
        )
    except BrickLinkAuthError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print_report(report, id_map)

    priced = sum(1 for row in catalog if has_price(merged.get(collapse_ws(row.get("id")))))
    print(f"[Prices] priced={priced}/{len(catalog)} ({percent(priced, len(catalog))})", flush=True)
    print("[Sample] BrickLink 6-month sold average", flush=True)
    for row in catalog[:SAMPLE_SIZE]:
        record = merged.get(collapse_ws(row.get("id")))
        if record:
            print(
                (
                    f"  {row.get('id')} ({record.get('bricklinkId')}) {row.get('name')}: "
                    f"new={record.get('valueNew')} used={record.get('valueUsed')}"
                ),
                flush=True,
            )

    if args.dry_run:
        print("[Dry run] prices not written", flush=True)
        return 0

    write_json(prices_path, merged)
    print(f"[Write] {prices_path}", flush=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
