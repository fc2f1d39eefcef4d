"""
Tests for the market data store and record merging.
"""

from mdt_engine.market_data.models import MarketRecord
from mdt_engine.market_data.store import MarketDataStore


class TestMarketDataStore:
    """Tests for per-symbol record storage."""

    def test_ingest_creates_record(self) -> None:
        store = MarketDataStore()

        record = store.ingest("NSECM:2885", {"symbol": "NSECM:2885", "ltp": "2500.5"})

        assert "NSECM:2885" in store
        assert record.ltp == 2500.5
        assert record.update_count == 1

    def test_ingest_merges_present_fields_only(self) -> None:
        """A later frame overwrites only the fields it carries."""
        store = MarketDataStore()
        store.ingest("A", {"symbol": "A", "ltp": 10, "high": 12, "p_change": "1.0"})

        record = store.ingest("A", {"symbol": "A", "ltp": 11})

        assert record.ltp == 11.0
        assert record.high == 12.0
        assert record.change_percent == 1.0
        assert record.update_count == 2

    def test_missing_field_stays_none(self) -> None:
        store = MarketDataStore()
        record = store.ingest("A", {"symbol": "A", "ltp": 1})

        assert record.volume is None
        assert record.low is None

    def test_extras_accumulate(self) -> None:
        store = MarketDataStore()
        store.ingest("A", {"symbol": "A", "bid": 1})
        record = store.ingest("A", {"symbol": "A", "ask": 2})

        assert record.extra == {"bid": 1, "ask": 2}

    def test_remove_and_clear(self) -> None:
        store = MarketDataStore()
        store.ingest("A", {"ltp": 1})
        store.ingest("B", {"ltp": 2})

        assert store.remove("A") is True
        assert store.remove("A") is False
        assert store.symbols() == ["B"]

        store.clear()
        assert len(store) == 0

    def test_snapshot_is_detached(self) -> None:
        """Mutating a snapshot does not touch the stored record."""
        store = MarketDataStore()
        store.ingest("A", {"ltp": 1})

        snapshot = store.snapshot()
        snapshot["A"].ltp = 99.0

        stored = store.get("A")
        assert stored is not None
        assert stored.ltp == 1.0


class TestMarketRecordPayload:
    """Tests for the consumer-facing record shape."""

    def test_payload_has_present_fields_and_extras(self) -> None:
        record = MarketRecord(symbol="A")
        record.merge({"ltp": 10.0, "change_percent": -1.5}, {"exchange": "NSE"})

        payload = record.to_payload()

        assert payload == {
            "symbol": "A",
            "ltp": 10.0,
            "changePercent": -1.5,
            "exchange": "NSE",
        }

    def test_canonical_fields_win_over_extras(self) -> None:
        record = MarketRecord(symbol="A")
        record.merge({"ltp": 10.0}, {"ltp_raw": "10", "symbol": "ignored"})

        assert record.to_payload()["symbol"] == "A"
