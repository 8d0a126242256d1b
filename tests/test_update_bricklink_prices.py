"""Tests for the BrickLink price stage: client, merge rules and overrides."""

from __future__ import annotations

from unittest.mock import Mock

import pytest
import requests

import update_bricklink_prices
from resumable_cache import ResumableCache
from update_bricklink_prices import (
    API_CACHE_NAME,
    MANUAL_OVERRIDES,
    BrickLinkAuthError,
    BrickLinkClient,
    ReconcileReport,
    apply_manual_overrides,
    fetch_price_pair,
    guide_average,
    ids_to_fig_ids,
    merge_authoritative,
    reconcile,
)


CREDENTIAL_ENV = {
    "BRICKLINK_CONSUMER_KEY": "ck",
    "BRICKLINK_CONSUMER_SECRET": "cs",
    "BRICKLINK_TOKEN_VALUE": "tv",
    "BRICKLINK_TOKEN_SECRET": "ts",
}


@pytest.fixture
def client():
    api = BrickLinkClient("ck", "cs", "tv", "ts", timeout=5.0, retries=1, verbose=False)
    api.session = Mock()
    return api


def guide_client(guides):
    """A client whose fetch_guide answers from ``guides[(guide_type, condition)]``."""
    api = Mock()
    api.verbose = False

    def fetch_guide(item_no, guide_type, condition):
        answer = guides.get((guide_type, condition), {})
        if isinstance(answer, Exception):
            raise answer
        return answer

    api.fetch_guide.side_effect = fetch_guide
    return api


class TestGuideAverage:
    """Tests for reading averages out of a price guide payload."""

    def test_sold_prefers_quantity_average(self):
        assert guide_average({"qty_avg_price": "12.3456", "avg_price": "20.00"}, "sold") == 12.35

    def test_sold_falls_back_to_plain_average(self):
        assert guide_average({"qty_avg_price": "0.0000", "avg_price": "7.5"}, "sold") == 7.5

    def test_stock_ignores_quantity_average(self):
        assert guide_average({"qty_avg_price": "12.00", "avg_price": "0"}, "stock") is None
        assert guide_average({"qty_avg_price": "12.00", "avg_price": "9.999"}, "stock") == 10.0

    def test_empty_guides(self):
        assert guide_average({}, "sold") is None
        assert guide_average(None, "sold") is None


class TestFetchPricePair:
    """Tests for the sold-then-stock lookup sequence."""

    def test_sold_values_skip_stock_calls(self):
        api = guide_client({("sold", "N"): {"qty_avg_price": "30"}, ("sold", "U"): {"qty_avg_price": "12"}})

        assert fetch_price_pair(api, "sw0001", pair_delay=0) == {"avgNew": 30.0, "avgUsed": 12.0}
        assert [call.args[1:] for call in api.fetch_guide.call_args_list] == [("sold", "N"), ("sold", "U")]

    def test_one_sold_value_is_enough(self):
        api = guide_client({("sold", "U"): {"avg_price": "4.20"}})
        assert fetch_price_pair(api, "sw0001", pair_delay=0) == {"avgNew": None, "avgUsed": 4.2}
        assert api.fetch_guide.call_count == 2

    def test_falls_back_to_stock(self):
        api = guide_client({("stock", "N"): {"avg_price": "55"}, ("stock", "U"): {"avg_price": "40"}})

        assert fetch_price_pair(api, "wampa", pair_delay=0) == {"avgNew": 55.0, "avgUsed": 40.0}
        assert [call.args[1:] for call in api.fetch_guide.call_args_list] == [
            ("sold", "N"),
            ("sold", "U"),
            ("stock", "N"),
            ("stock", "U"),
        ]

    def test_partial_failure_counts_as_no_data(self):
        api = guide_client({("sold", "N"): RuntimeError("BrickLink: HTTP 404"), ("sold", "U"): {"avg_price": "3"}})
        assert fetch_price_pair(api, "sw0001", pair_delay=0) == {"avgNew": None, "avgUsed": 3.0}

    def test_all_lookups_failing_raises(self):
        error = RuntimeError("BrickLink: HTTP 503")
        api = guide_client({key: error for key in [("sold", "N"), ("sold", "U"), ("stock", "N"), ("stock", "U")]})

        with pytest.raises(RuntimeError, match="503"):
            fetch_price_pair(api, "sw0001", pair_delay=0)

    def test_auth_error_propagates(self):
        api = guide_client({("sold", "N"): BrickLinkAuthError("rejected")})
        with pytest.raises(BrickLinkAuthError):
            fetch_price_pair(api, "sw0001", pair_delay=0)

    def test_sleeps_between_paired_calls(self, monkeypatch):
        sleeper = Mock()
        monkeypatch.setattr(update_bricklink_prices, "maybe_sleep", sleeper)
        api = guide_client({})

        fetch_price_pair(api, "sw0001", pair_delay=0.3)
        assert sleeper.call_count == 2
        sleeper.assert_called_with(0.3)


class TestBrickLinkClient:
    """Tests for the OAuth-signed price guide call."""

    def test_returns_data_object(self, client, response_factory):
        client.session.get.return_value = response_factory(
            200, json_data={"meta": {"code": 200}, "data": {"avg_price": "5.00"}}
        )

        assert client.fetch_guide("sw0001", "sold", "N") == {"avg_price": "5.00"}
        args, kwargs = client.session.get.call_args
        assert args[0] == "https://api.bricklink.com/api/store/v1/items/MINIFIG/sw0001/price"
        assert kwargs["params"] == {"guide_type": "sold", "new_or_used": "N", "currency_code": "USD"}
        assert kwargs["auth"] is client.oauth

    def test_http_401_is_auth_error(self, client, response_factory):
        client.session.get.return_value = response_factory(401)
        with pytest.raises(BrickLinkAuthError):
            client.fetch_guide("sw0001", "sold", "N")

    def test_meta_401_is_auth_error(self, client, response_factory):
        client.session.get.return_value = response_factory(
            200, json_data={"meta": {"code": 401, "message": "INVALID_SIGNATURE"}}
        )
        with pytest.raises(BrickLinkAuthError, match="INVALID_SIGNATURE"):
            client.fetch_guide("sw0001", "sold", "N")

    def test_meta_error_is_runtime_error(self, client, response_factory):
        client.session.get.return_value = response_factory(
            200, json_data={"meta": {"code": 404, "message": "RESOURCE_NOT_FOUND"}}
        )
        with pytest.raises(RuntimeError, match="meta code=404"):
            client.fetch_guide("nope", "sold", "N")

    def test_invalid_json_is_runtime_error(self, client, response_factory):
        client.session.get.return_value = response_factory(200, text="<html>")
        with pytest.raises(RuntimeError, match="invalid JSON"):
            client.fetch_guide("sw0001", "sold", "N")

    def test_server_error_retried(self, client, response_factory):
        client.session.get.side_effect = [
            response_factory(502),
            response_factory(200, json_data={"data": {"avg_price": "1"}}),
        ]
        assert client.fetch_guide("sw0001", "stock", "U") == {"avg_price": "1"}
        assert client.session.get.call_count == 2

    def test_transport_errors_exhaust_retries(self, client):
        client.session.get.side_effect = requests.Timeout("slow")
        with pytest.raises(RuntimeError, match="request failed"):
            client.fetch_guide("sw0001", "sold", "N")
        assert client.session.get.call_count == 2


class TestMergeAuthoritative:
    """Tests for the API-over-matched merge rule."""

    def test_api_values_replace_matched_values(self):
        prices = {"fig-1": {"valueNew": 10.0, "valueUsed": 5.0, "bricklinkId": "sw1"}}
        stats = merge_authoritative(prices, {"sw1": {"avgNew": 22.0, "avgUsed": 11.0}})

        assert prices["fig-1"] == {"valueNew": 22.0, "valueUsed": 11.0, "bricklinkId": "sw1"}
        assert stats.updated == 1

    def test_one_api_value_replaces_both(self):
        prices = {"fig-1": {"valueNew": 10.0, "valueUsed": 5.0, "bricklinkId": "sw1"}}
        merge_authoritative(prices, {"sw1": {"avgNew": None, "avgUsed": 4.0}})
        assert prices["fig-1"]["valueNew"] is None
        assert prices["fig-1"]["valueUsed"] == 4.0

    def test_empty_or_failed_results_keep_values(self):
        prices = {
            "fig-1": {"valueNew": 10.0, "valueUsed": 5.0, "bricklinkId": "sw1"},
            "fig-2": {"valueNew": None, "valueUsed": 3.0, "bricklinkId": "sw2"},
            "fig-3": {"valueNew": 1.0, "valueUsed": None, "bricklinkId": "sw3"},
        }
        before = {key: dict(value) for key, value in prices.items()}
        stats = merge_authoritative(prices, {"sw1": {"avgNew": None, "avgUsed": None}, "sw2": None})

        assert prices == before
        assert stats.kept == 1
        assert stats.updated == 0


class TestManualOverrides:
    """Tests for filling unpriced records from the override table."""

    def test_existing_value_is_never_overwritten(self):
        prices = {"fig-1": {"valueNew": 5.0, "valueUsed": None, "bricklinkId": "sw1"}}
        stats = apply_manual_overrides(prices, {"fig-1": {"valueNew": 99.0, "valueUsed": 10.0, "bricklinkId": "x"}})

        assert prices["fig-1"] == {"valueNew": 5.0, "valueUsed": None, "bricklinkId": "sw1"}
        assert stats.already_priced == 1

    def test_fills_unpriced_and_missing_records(self):
        prices = {"fig-1": {"valueNew": None, "valueUsed": None, "bricklinkId": "old", "note": "kept"}}
        overrides = {
            "fig-1": {"valueNew": 2.0, "valueUsed": 1.0, "bricklinkId": "new"},
            "fig-2": {"valueNew": 4.0, "valueUsed": 3.0, "bricklinkId": "other"},
        }
        stats = apply_manual_overrides(prices, overrides)

        assert prices["fig-1"] == {"valueNew": 2.0, "valueUsed": 1.0, "bricklinkId": "new", "note": "kept"}
        assert prices["fig-2"] == {"valueNew": 4.0, "valueUsed": 3.0, "bricklinkId": "other"}
        assert stats.applied == 2

    def test_overrides_apply_per_entity_not_per_external_id(self):
        """Two figures sharing one BrickLink id keep their own override values."""
        prices = {}
        overrides = {
            "fig-a": {"valueNew": 50.0, "valueUsed": 30.0, "bricklinkId": "bigfig"},
            "fig-b": {"valueNew": 60.0, "valueUsed": 35.0, "bricklinkId": "bigfig"},
        }
        apply_manual_overrides(prices, overrides)

        assert (prices["fig-a"]["valueNew"], prices["fig-a"]["valueUsed"]) == (50.0, 30.0)
        assert (prices["fig-b"]["valueNew"], prices["fig-b"]["valueUsed"]) == (60.0, 35.0)

    def test_shipped_table_shares_ids_across_entities(self):
        assert MANUAL_OVERRIDES["fig-003838"]["bricklinkId"] == MANUAL_OVERRIDES["fig-011198"]["bricklinkId"]


class TestReconcile:
    """Tests for the full fetch/merge/override pass."""

    @pytest.fixture
    def prices(self):
        return {
            "fig-1": {"valueNew": 10.0, "valueUsed": 5.0, "bricklinkId": "sw1"},
            "fig-2": {"valueNew": 8.0, "valueUsed": 4.0, "bricklinkId": "sw2"},
            "fig-3": {"valueNew": None, "valueUsed": None, "bricklinkId": "sw2"},
            "fig-4": {"valueNew": None, "valueUsed": None, "bricklinkId": "sw4"},
            "fig-5": {"valueNew": None, "valueUsed": None, "bricklinkId": ""},
        }

    def test_ids_group_entities(self, prices):
        assert ids_to_fig_ids(prices) == {"sw1": ["fig-1"], "sw2": ["fig-2", "fig-3"], "sw4": ["fig-4"]}

    def test_fetches_only_uncached_ids(self, tmp_path, prices, write_json_file, read_json_file):
        cache_path = write_json_file(tmp_path / API_CACHE_NAME, {"sw1": {"avgNew": 30.0, "avgUsed": 20.0}})
        cache = ResumableCache.open(cache_path, flush_every=100)
        fetch = Mock(side_effect=lambda item: {"avgNew": None, "avgUsed": 6.0} if item == "sw2" else {"avgNew": None, "avgUsed": None})

        merged, report = reconcile(prices, fetch, {"fig-4": {"valueNew": 1.0, "valueUsed": 0.5}}, cache=cache, delay=0)

        assert [call.args[0] for call in fetch.call_args_list] == ["sw2", "sw4"]
        assert set(read_json_file(cache_path)) == {"sw1", "sw2", "sw4"}
        assert merged["fig-1"]["valueNew"] == 30.0
        assert merged["fig-2"] == {"valueNew": None, "valueUsed": 6.0, "bricklinkId": "sw2"}
        assert merged["fig-3"] == {"valueNew": None, "valueUsed": 6.0, "bricklinkId": "sw2"}
        assert merged["fig-4"] == {"valueNew": 1.0, "valueUsed": 0.5, "bricklinkId": "sw4"}
        assert report.with_prices == 1
        assert report.no_prices == ["sw4"]
        assert prices["fig-1"]["valueNew"] == 10.0

    def test_failed_fetch_keeps_previous_values(self, tmp_path, prices):
        cache = ResumableCache(tmp_path / API_CACHE_NAME, flush_every=100)
        fetch = Mock(side_effect=RuntimeError("BrickLink: HTTP 503"))

        merged, report = reconcile(prices, fetch, {}, cache=cache, delay=0)

        assert merged == prices
        assert len(report.errors) == 3
        assert cache.get("sw1") is None and "sw1" in cache

    def test_auth_error_stops_run_after_flush(self, tmp_path, prices, read_json_file):
        calls = []

        def fetch(item):
            calls.append(item)
            if item == "sw2":
                raise BrickLinkAuthError("rejected")
            return {"avgNew": 1.0, "avgUsed": 1.0}

        cache = ResumableCache(tmp_path / API_CACHE_NAME, flush_every=100)
        with pytest.raises(BrickLinkAuthError):
            reconcile(prices, fetch, {}, cache=cache, delay=0)

        assert calls == ["sw1", "sw2"]
        assert read_json_file(tmp_path / API_CACHE_NAME) == {"sw1": {"avgNew": 1.0, "avgUsed": 1.0}}

    def test_adds_to_existing_report(self, tmp_path, prices):
        cache = ResumableCache(tmp_path / API_CACHE_NAME, flush_every=100)
        cache.record_success("sw1", {"avgNew": None, "avgUsed": None})
        report = ReconcileReport(fetched=1, no_prices=["sw1"])
        fetch = Mock(return_value={"avgNew": 2.0, "avgUsed": None})

        _, returned = reconcile(prices, fetch, {}, cache=cache, delay=0, report=report)

        assert returned is report
        assert report.fetched == 3
        assert report.with_prices == 2
        assert report.no_prices == ["sw1"]


class TestMain:
    """End-to-end runs with the BrickLink calls stubbed."""

    @pytest.fixture
    def files(self, tmp_path, write_json_file):
        catalog = write_json_file(
            tmp_path / "catalog.json",
            [{"id": "fig-003838", "name": "Wampa"}, {"id": "fig-1", "name": "Luke"}],
        )
        prices = write_json_file(
            tmp_path / "prices.json",
            {
                "fig-1": {"valueNew": 10.0, "valueUsed": 5.0, "bricklinkId": "sw1"},
                "fig-003838": {"valueNew": None, "valueUsed": None, "bricklinkId": "wampa"},
            },
        )
        argv = ["--catalog-json", str(catalog), "--prices-json", str(prices), "--cache-dir", str(tmp_path / "cache")]
        return {"prices": prices, "argv": argv}

    @pytest.fixture
    def credentials(self, monkeypatch):
        for key, value in CREDENTIAL_ENV.items():
            monkeypatch.setenv(key, value)

    def test_missing_credentials(self, files, monkeypatch):
        for key in list(CREDENTIAL_ENV) + ["BRICKLINK_TOKEN"]:
            monkeypatch.delenv(key, raising=False)
        assert update_bricklink_prices.main(files["argv"]) == 1

    def test_token_alias(self, files, monkeypatch):
        for key, value in CREDENTIAL_ENV.items():
            monkeypatch.setenv(key, value)
        monkeypatch.delenv("BRICKLINK_TOKEN_VALUE")
        monkeypatch.setenv("BRICKLINK_TOKEN", "alias")
        fetch = Mock(return_value={"avgNew": None, "avgUsed": None})
        monkeypatch.setattr(update_bricklink_prices, "fetch_price_pair", fetch)

        assert update_bricklink_prices.main(files["argv"] + ["--dry-run"]) == 0

    def test_auth_failure_on_first_id_aborts(self, files, credentials, monkeypatch, read_json_file):
        monkeypatch.setattr(
            update_bricklink_prices,
            "fetch_price_pair",
            Mock(side_effect=BrickLinkAuthError("BrickLink API authentication failed")),
        )
        before = read_json_file(files["prices"])

        assert update_bricklink_prices.main(files["argv"]) == 1
        assert read_json_file(files["prices"]) == before

    def test_applies_prices_and_overrides(self, files, credentials, monkeypatch, read_json_file):
        def fake_pair(client, item_no, *, pair_delay):
            if item_no == "sw1":
                return {"avgNew": 25.5, "avgUsed": 14.25}
            return {"avgNew": None, "avgUsed": None}

        monkeypatch.setattr(update_bricklink_prices, "fetch_price_pair", Mock(side_effect=fake_pair))

        assert update_bricklink_prices.main(files["argv"]) == 0

        prices = read_json_file(files["prices"])
        assert prices["fig-1"] == {"valueNew": 25.5, "valueUsed": 14.25, "bricklinkId": "sw1"}
        assert prices["fig-003838"] == {"valueNew": 53.74, "valueUsed": 38.0, "bricklinkId": "wampa"}
        assert "fig-014399" in prices

    def test_first_id_counted_in_summary(self, files, credentials, monkeypatch, capsys):
        def fake_pair(client, item_no, *, pair_delay):
            if item_no == "wampa":
                return {"avgNew": 50.0, "avgUsed": None}
            return {"avgNew": None, "avgUsed": None}

        monkeypatch.setattr(update_bricklink_prices, "fetch_price_pair", Mock(side_effect=fake_pair))

        assert update_bricklink_prices.main(files["argv"] + ["--dry-run"]) == 0

        out = capsys.readouterr().out
        assert "[API] fetched=2 with_prices=1 no_prices=1 errors=0" in out
        assert "no price data: sw1 (fig-1)" in out
