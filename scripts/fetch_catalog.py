#!/usr/bin/env python3
"""Build the Star Wars minifigure catalog from Rebrickable CSV dumps.

Downloads the themes/minifigs/sets/inventories/inventory_minifigs dumps into
the cache directory (reusing files already there), keeps every minifigure
that appears in a Star Wars set, and writes catalog.json: one row per
minifigure with its sets, first year and a guessed faction.
"""

from __future__ import annotations

import argparse
import csv
import gzip
import re
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Set, Tuple

import requests

from refresh_common import (
    DEFAULT_CACHE_DIR,
    DEFAULT_CATALOG_JSON,
    FetchConfig,
    collapse_ws,
    log,
    parse_int,
    write_json,
)


CSV_URLS: Dict[str, str] = {
    "themes": "https://cdn.rebrickable.com/media/downloads/themes.csv.gz",
    "minifigs": "https://cdn.rebrickable.com/media/downloads/minifigs.csv.gz",
    "sets": "https://cdn.rebrickable.com/media/downloads/sets.csv.gz",
    "inventories": "https://cdn.rebrickable.com/media/downloads/inventories.csv.gz",
    "inventory_minifigs": "https://cdn.rebrickable.com/media/downloads/inventory_minifigs.csv.gz",
}

STAR_WARS_ROOT_THEME = "158"
# Older Star Wars sets were filed under Technic as theme 18.
STAR_WARS_LEGACY_THEME = "18"
FALLBACK_YEAR = 2000
DEFAULT_TAG = "Other"


def _rule(pattern: str, tag: str) -> Tuple[Pattern[str], str]:
    return (re.compile(r"\b(" + pattern + r")\b"), tag)


# First match wins; order is priority (clone/imperial uniforms before the
# generic rebel and jedi keywords).
FACTION_RULES: List[Tuple[Pattern[str], str]] = [
    _rule(r"clone|captain rex|commander (cody|wolffe|bly|gree|fox)|arc trooper|phase", "Clone"),
    _rule(
        r"stormtrooper|death trooper|scout trooper|snowtrooper|sandtrooper|imperial|tarkin|moff"
        r"|at-at driver|tie pilot|officer",
        "Empire",
    ),
    _rule(r"first order|captain phasma|kylo|hux|praetorian", "First Order"),
    _rule(
        r"rebel|mon mothma|admiral ackbar|leia.*hoth|rebel pilot|a-wing|x-wing pilot|y-wing pilot|b-wing pilot",
        "Rebel Alliance",
    ),
    _rule(r"resistance|finn|poe|rose tico", "Resistance"),
    _rule(
        r"jedi|luke|obi-wan|anakin|yoda|mace windu|ahsoka|qui-gon|kit fisto|plo koon|aayla|luminara|youngling",
        "Jedi",
    ),
    _rule(r"sith|darth|palpatine|emperor|dooku|maul|ventress|inquisitor|savage", "Sith"),
    _rule(r"mandalorian|boba fett|jango|bo-katan|din djarin|mando|sabine|pre vizsla", "Mandalorian"),
    _rule(r"bounty|greedo|bossk|dengar|ig-88|4-lom|zuckuss|embo|cad bane|aurra", "Bounty Hunter"),
    _rule(r"droid|r2|c-3po|bb-8|gonk|battle droid|super battle|commando droid|ig-\d|chopper|k-2so", "Droid"),
    _rule(r"wookiee|chewbacca|tarfful", "Wookiee"),
    _rule(r"ewok|wicket", "Ewok"),
    _rule(r"tusken|jawa|hutt|jabba|gamorrean|twilek|rodian|gungan|jar jar", "Civilian"),
    _rule(r"han solo|lando|padm|bail", "Rebel Alliance"),
]


@dataclass
class SetInfo:
    set_num: str
    name: str
    year: int
    theme_id: str


@dataclass
class BuildStats:
    theme_ids: int = 0
    sets_kept: int = 0
    sets_skipped: int = 0
    inventories_skipped: int = 0
    memberships_skipped: int = 0
    minifigs_skipped: int = 0
    figs_in_sets: int = 0
    figs_kept: int = 0
    figs_without_metadata: int = 0


def classify_by_keyword(name: str, rules: Sequence[Tuple[Pattern[str], str]] = FACTION_RULES) -> str:
    lowered = str(name or "").lower()
    for pattern, tag in rules:
        if pattern.search(lowered):
            return tag
    return DEFAULT_TAG


def descendant_theme_ids(
    theme_rows: Iterable[Dict[str, str]],
    roots: Sequence[str] = (STAR_WARS_ROOT_THEME, STAR_WARS_LEGACY_THEME),
) -> Set[str]:
    edges: List[Tuple[str, str]] = []
    for row in theme_rows:
        theme_id = collapse_ws(row.get("id"))
        parent_id = collapse_ws(row.get("parent_id"))
        if theme_id and parent_id:
            edges.append((theme_id, parent_id))

    ids: Set[str] = set(roots)
    changed = True
    while changed:
        changed = False
        for theme_id, parent_id in edges:
            if theme_id not in ids and parent_id in ids:
                ids.add(theme_id)
                changed = True
    return ids


def build_catalog(
    themes: Sequence[Dict[str, str]],
    minifigs: Sequence[Dict[str, str]],
    sets: Sequence[Dict[str, str]],
    inventories: Sequence[Dict[str, str]],
    inventory_minifigs: Sequence[Dict[str, str]],
    *,
    roots: Sequence[str] = (STAR_WARS_ROOT_THEME, STAR_WARS_LEGACY_THEME),
    rules: Sequence[Tuple[Pattern[str], str]] = FACTION_RULES,
) -> Tuple[List[Dict[str, Any]], BuildStats]:
    stats = BuildStats()
    theme_ids = descendant_theme_ids(themes, roots)
    stats.theme_ids = len(theme_ids)

    sw_sets: Dict[str, SetInfo] = {}
    for row in sets:
        theme_id = collapse_ws(row.get("theme_id"))
        if theme_id not in theme_ids:
            continue
        set_num = collapse_ws(row.get("set_num"))
        year = parse_int(row.get("year"))
        if not set_num or year is None:
            stats.sets_skipped += 1
            continue
        sw_sets[set_num] = SetInfo(set_num=set_num, name=collapse_ws(row.get("name")), year=year, theme_id=theme_id)
    stats.sets_kept = len(sw_sets)

    # Version 1 inventory wins; otherwise the first row seen for the set.
    set_to_inventory: Dict[str, str] = {}
    for row in inventories:
        inventory_id = collapse_ws(row.get("id"))
        set_num = collapse_ws(row.get("set_num"))
        if not inventory_id or not set_num:
            stats.inventories_skipped += 1
            continue
        if set_num not in set_to_inventory or parse_int(row.get("version")) == 1:
            set_to_inventory[set_num] = inventory_id

    inventory_to_set: Dict[str, str] = {}
    for set_num in sw_sets:
        inventory_id = set_to_inventory.get(set_num)
        if inventory_id:
            inventory_to_set[inventory_id] = set_num

    fig_to_sets: Dict[str, Dict[str, None]] = {}
    for row in inventory_minifigs:
        inventory_id = collapse_ws(row.get("inventory_id"))
        fig_num = collapse_ws(row.get("fig_num"))
        if not inventory_id or not fig_num:
            stats.memberships_skipped += 1
            continue
        set_num = inventory_to_set.get(inventory_id)
        if set_num:
            fig_to_sets.setdefault(fig_num, {})[set_num] = None
    stats.figs_in_sets = len(fig_to_sets)

    metadata: Dict[str, Tuple[str, str]] = {}
    for row in minifigs:
        fig_num = collapse_ws(row.get("fig_num"))
        name = collapse_ws(row.get("name"))
        if not fig_num or not name:
            stats.minifigs_skipped += 1
            continue
        metadata[fig_num] = (name, collapse_ws(row.get("img_url")))

    catalog: List[Dict[str, Any]] = []
    for fig_num, set_nums in fig_to_sets.items():
        info = metadata.get(fig_num)
        if info is None:
            stats.figs_without_metadata += 1
            continue
        name, image_url = info

        memberships = [
            {"id": sw_sets[set_num].set_num, "name": sw_sets[set_num].name, "year": sw_sets[set_num].year}
            for set_num in set_nums
            if set_num in sw_sets
        ]
        memberships.sort(key=lambda membership: membership["year"])
        year = min((membership["year"] for membership in memberships), default=FALLBACK_YEAR)

        catalog.append(
            {
                "id": fig_num,
                "name": name,
                "imageUrl": image_url,
                "year": year,
                "sets": memberships,
                "faction": classify_by_keyword(name, rules),
                "numSets": len(memberships),
            }
        )

    catalog.sort(key=lambda row: row["id"])
    stats.figs_kept = len(catalog)
    return catalog, stats


def faction_breakdown(catalog: Sequence[Dict[str, Any]]) -> List[Tuple[str, int]]:
    counts: Dict[str, int] = {}
    for row in catalog:
        tag = row.get("faction") or DEFAULT_TAG
        counts[tag] = counts.get(tag, 0) + 1
    return sorted(counts.items(), key=lambda pair: pair[1], reverse=True)


def year_range(catalog: Sequence[Dict[str, Any]]) -> Optional[Tuple[int, int]]:
    years = [row["year"] for row in catalog if isinstance(row.get("year"), int) and row["year"] > 1990]
    if not years:
        return None
    return (min(years), max(years))


def download_gz_csv(
    session: requests.Session,
    url: str,
    dest: Path,
    cfg: FetchConfig,
    *,
    label: str,
) -> Path:
    if dest.exists():
        log(f"[{label}] cached {dest.name}", enabled=cfg.verbose)
        return dest

    dest.parent.mkdir(parents=True, exist_ok=True)
    attempts = max(1, cfg.retries + 1)
    for attempt in range(1, attempts + 1):
        try:
            response = session.get(url, timeout=cfg.timeout, headers={"Accept": "*/*"})
        except requests.RequestException as exc:
            if attempt == attempts:
                raise RuntimeError(f"{label}: download failed: {exc}") from exc
            time.sleep(min(10.0, attempt * 1.5))
            continue

        if response.status_code >= 500:
            if attempt == attempts:
                raise RuntimeError(f"{label}: HTTP {response.status_code}")
            time.sleep(min(15.0, attempt * 2.0))
            continue
        if response.status_code >= 400:
            raise RuntimeError(f"{label}: HTTP {response.status_code}")

        tmp = dest.with_suffix(dest.suffix + ".part")
        tmp.write_bytes(response.content)
        tmp.replace(dest)
        log(f"[{label}] downloaded {url}", enabled=cfg.verbose)
        return dest

    raise RuntimeError(f"{label}: unreachable failure")


def read_gz_csv(path: Path) -> List[Dict[str, str]]:
    with gzip.open(path, mode="rt", encoding="utf-8", newline="") as fh:
        reader = csv.DictReader(fh)
        return [{str(k): str(v or "") for k, v in row.items()} for row in reader if isinstance(row, dict)]


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build the minifigure catalog from Rebrickable CSV dumps.")
    parser.add_argument("--catalog-json", default=DEFAULT_CATALOG_JSON, help="Catalog JSON output path.")
    parser.add_argument("--cache-dir", default=DEFAULT_CACHE_DIR, help="Directory for downloaded CSV dumps.")
    parser.add_argument("--timeout", type=float, default=60.0, help="HTTP timeout in seconds.")
    parser.add_argument("--retries", type=int, default=3, help="Retry count for downloads.")
    parser.add_argument("--dry-run", action="store_true", help="Do not write the catalog.")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging.")
    return parser.parse_args(argv)


def main(argv: Sequence[str]) -> int:
    args = parse_args(argv)
    cfg = FetchConfig(timeout=max(5.0, args.timeout), retries=max(0, args.retries), verbose=bool(args.verbose))
    cache_dir = Path(args.cache_dir)
    catalog_path = Path(args.catalog_json)

    session = requests.Session()
    tables: Dict[str, List[Dict[str, str]]] = {}
    for name, url in CSV_URLS.items():
        try:
            path = download_gz_csv(session, url, cache_dir / f"{name}.csv.gz", cfg, label=name)
            tables[name] = read_gz_csv(path)
        except (RuntimeError, OSError, EOFError, csv.Error) as exc:
            print(f"[Catalog] {name}: {exc}", file=sys.stderr)
            return 1

    print(
        (
            f"[Catalog] themes={len(tables['themes'])} minifigs={len(tables['minifigs'])} "
            f"sets={len(tables['sets'])} inventories={len(tables['inventories'])} "
            f"inventory_minifigs={len(tables['inventory_minifigs'])}"
        ),
        flush=True,
    )

    catalog, stats = build_catalog(
        tables["themes"],
        tables["minifigs"],
        tables["sets"],
        tables["inventories"],
        tables["inventory_minifigs"],
    )
    skipped = (
        stats.sets_skipped
        + stats.inventories_skipped
        + stats.memberships_skipped
        + stats.minifigs_skipped
    )
    print(
        (
            f"[Catalog] theme_ids={stats.theme_ids} sets={stats.sets_kept} "
            f"figs_in_sets={stats.figs_in_sets} kept={stats.figs_kept} skipped_rows={skipped}"
        ),
        flush=True,
    )

    print("[Factions]", flush=True)
    for tag, count in faction_breakdown(catalog):
        print(f"  {tag}: {count}", flush=True)
    span = year_range(catalog)
    if span is not None:
        print(f"[Years] {span[0]} - {span[1]}", flush=True)

    if args.dry_run:
        print("[Dry run] catalog not written", flush=True)
        return 0

    write_json(catalog_path, catalog)
    print(f"[Write] {catalog_path} ({len(catalog)} minifigs)", flush=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
