from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest

from name_matching import ExternalPriceRecord


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> Mock:
    """Rate-limit delays are real sleeps; tests never wait."""
    sleeper = Mock()
    monkeypatch.setattr("time.sleep", sleeper)
    return sleeper


@pytest.fixture
def write_json_file():
    def write(path: Path, data: Any) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return write


@pytest.fixture
def read_json_file():
    def read(path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))

    return read


@pytest.fixture
def sample_catalog() -> List[Dict[str, Any]]:
    return [
        {"id": "fig-000001", "name": "Luke Skywalker, Tatooine", "year": 1999, "faction": "Jedi"},
        {"id": "fig-000002", "name": "Battle Droid", "year": 1999, "faction": "Droid"},
        {"id": "fig-000003", "name": "Wickett", "year": 1983, "faction": "Ewok"},
        {"id": "fig-000004", "name": "Unknown Figure", "year": 2020, "faction": "Other"},
    ]


@pytest.fixture
def sample_pool() -> List[ExternalPriceRecord]:
    return [
        ExternalPriceRecord("sw0001a", "Luke Skywalker (Tatooine, Light Nougat Hands)", 40.0, 12.5),
        ExternalPriceRecord("sw0001b", "Battle Droid", 8.0, 2.5),
        ExternalPriceRecord("sw0236", "Wicket", 15.0, 7.0),
        ExternalPriceRecord("sw0999", "Han Solo, Hoth", None, 9.0),
    ]


def make_response(
    status_code: int = 200,
    *,
    text: str = "",
    headers: Dict[str, str] | None = None,
    json_data: Any = None,
    content: bytes = b"",
) -> Mock:
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.headers = headers or {}
    response.content = content
    response.encoding = "utf-8"
    if json_data is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def response_factory():
    return make_response
