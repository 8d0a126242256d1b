"""Shared helpers for the minifig catalog/price refresh scripts.

Covers value coercion, whole-file JSON artifacts (written atomically),
the rate-limited HTML fetcher used by the scraping stages, and the
price-record shape stored in prices.json.
"""

from __future__ import annotations

import json
import os
import random
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests


DEFAULT_CATALOG_JSON = "src/data/catalog.json"
DEFAULT_PRICES_JSON = "src/data/prices.json"
DEFAULT_CACHE_DIR = ".cache"

REDIRECT_STATUSES = {301, 302, 303, 307, 308}

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/122.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


@dataclass
class FetchConfig:
    timeout: float
    retries: int
    verbose: bool
    max_redirects: int = 5


def log(msg: str, *, enabled: bool) -> None:
    if enabled:
        print(msg, flush=True)


def collapse_ws(value: Any) -> str:
    return re.sub(r"\s+", " ", str(value or "")).strip()


def parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = collapse_ws(value)
    if not text:
        return None
    match = re.search(r"-?[0-9][0-9,]*", text)
    if not match:
        return None
    try:
        return int(match.group(0).replace(",", ""))
    except ValueError:
        return None


def parse_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        return float(int(value))
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    match = re.search(r"-?[0-9][0-9,]*(?:\.[0-9]+)?", text)
    if not match:
        return None
    try:
        return float(match.group(0).replace(",", ""))
    except ValueError:
        return None


def percent(part: int, total: int) -> str:
    if total <= 0:
        return "0.0%"
    return f"{(part / total) * 100.0:.1f}%"


def maybe_sleep(base_delay: float, jitter: float = 0.0) -> None:
    delay = max(0.0, base_delay)
    if jitter > 0:
        delay += random.uniform(0.0, jitter)
    if delay > 0:
        time.sleep(delay)


def load_json_array(path: Path) -> List[Dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"Expected top-level array in {path}")
    return [row for row in data if isinstance(row, dict)]


def read_json_object(path: Path) -> Dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Expected top-level object in {path}")
    return data


def load_json_object(path: Path) -> Dict[str, Any]:
    # Caches: anything unreadable counts as empty.
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    if isinstance(data, dict):
        return data
    return {}


def write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, ensure_ascii=False, indent=2) + "\n"
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def price_record(value_new: Optional[float], value_used: Optional[float], bricklink_id: str) -> Dict[str, Any]:
    return {"valueNew": value_new, "valueUsed": value_used, "bricklinkId": bricklink_id}


def has_price(record: Optional[Dict[str, Any]]) -> bool:
    if not record:
        return False
    return record.get("valueNew") is not None or record.get("valueUsed") is not None


def load_prices(path: Path) -> Dict[str, Dict[str, Any]]:
    data = read_json_object(path)
    return {str(key): value for key, value in data.items() if isinstance(value, dict)}


def fetch_text(
    session: requests.Session,
    url: str,
    cfg: FetchConfig,
    *,
    source: str,
    headers: Optional[Dict[str, str]] = None,
) -> str:
    """GET ``url`` and return the body text.

    Redirects are followed here rather than by requests so that a redirect
    loop surfaces as a per-item failure. Raises RuntimeError on transport
    errors, HTTP >= 400 and exhausted retries.
    """
    request_headers = dict(BROWSER_HEADERS)
    if headers:
        request_headers.update(headers)

    current = url
    redirects = 0
    attempts = max(1, cfg.retries + 1)
    attempt = 0
    while True:
        attempt += 1
        try:
            response = session.get(
                current,
                headers=request_headers,
                timeout=cfg.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            if attempt >= attempts:
                raise RuntimeError(f"{source}: request failed for {current}: {exc}") from exc
            time.sleep(min(8.0, 1.2 * attempt))
            continue

        if response.status_code in REDIRECT_STATUSES:
            location = response.headers.get("Location")
            if not location:
                raise RuntimeError(f"{source}: HTTP {response.status_code} without Location for {current}")
            redirects += 1
            if redirects > cfg.max_redirects:
                raise RuntimeError(f"{source}: too many redirects for {url}")
            current = urljoin(current, location)
            # Each redirect target gets its own retry allowance.
            attempt = 0
            log(f"[{source}] redirect -> {current}", enabled=cfg.verbose)
            continue

        if response.status_code == 429:
            if attempt >= attempts:
                raise RuntimeError(f"{source}: HTTP 429 for {current}")
            wait = parse_int(response.headers.get("Retry-After"))
            wait_seconds = float(max(1, wait)) if wait is not None else min(60.0, attempt * 10.0)
            log(f"[{source}] HTTP 429 for {current}; waiting {wait_seconds:.0f}s", enabled=cfg.verbose)
            time.sleep(wait_seconds)
            continue

        if response.status_code >= 500 and attempt < attempts:
            time.sleep(min(15.0, attempt * 2.0))
            continue

        if response.status_code >= 400:
            raise RuntimeError(f"{source}: HTTP {response.status_code} for {current}")

        response.encoding = response.encoding or "utf-8"
        return response.text
