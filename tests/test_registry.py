"""Tests for stockwatch.registry — symbol list parsing and idempotent seeding."""

import pytest

from stockwatch.core.errors import SeedError
from stockwatch.core.models import Symbol
from stockwatch.core.settings import DEFAULT_SYMBOLS
from stockwatch.registry import SeedOutcome, parse_symbols, seed_symbols
from stockwatch.store import InMemorySymbolStore

APPLE = Symbol("AAPL", "Apple")
GOOGLE = Symbol("GOOG", "Alphabet")


class TestParseSymbols:
    def test_default_list(self):
        assert parse_symbols(DEFAULT_SYMBOLS) == [
            Symbol("BINANCE:BTCUSDT", "BTC"),
            Symbol("BINANCE:ETHUSDT", "ETH"),
        ]

    @pytest.mark.parametrize("raw", ["not json", '{"name": "BTC"}', '"BTC"'])
    def test_invalid_lists(self, raw):
        with pytest.raises(SeedError):
            parse_symbols(raw)

    @pytest.mark.parametrize(
        "raw, ticker",
        [
            ('[{"name": "BTC"}]', "#0"),
            ('[{"symbol": "BINANCE:BTCUSDT"}]', "BINANCE:BTCUSDT"),
            ('[{"name": "", "symbol": "X"}]', "X"),
            ('["BTC"]', "#0"),
        ],
    )
    def test_invalid_entry_returned_in_place(self, raw, ticker):
        [entry] = parse_symbols(raw)
        assert isinstance(entry, SeedError)
        assert entry.context.ticker == ticker


class TestSeedSymbols:
    def test_creates_rows(self, store):
        result = seed_symbols(store, [APPLE, GOOGLE])

        assert result.success
        assert [e.outcome for e in result.entries] == [SeedOutcome.CREATED, SeedOutcome.CREATED]
        assert store.list_symbols() == [APPLE, GOOGLE]

    def test_seeding_twice_is_idempotent(self, store):
        events = []
        store.add_listener(events.append)

        seed_symbols(store, [APPLE, GOOGLE])
        result = seed_symbols(store, [APPLE, GOOGLE])

        assert result.success
        assert result.count(SeedOutcome.EXISTS) == 2
        assert len(store.list_symbols()) == 2
        assert len(events) == 2

    def test_superset_only_adds_new(self, store):
        seed_symbols(store, [APPLE])
        result = seed_symbols(store, [APPLE, GOOGLE])

        assert [(e.ticker, e.outcome) for e in result.entries] == [
            ("AAPL", SeedOutcome.EXISTS),
            ("GOOG", SeedOutcome.CREATED),
        ]

    def test_existing_row_not_replaced(self, store):
        seed_symbols(store, [APPLE])
        seed_symbols(store, [Symbol("AAPL", "Renamed")])
        assert store.list_symbols() == [APPLE]

    def test_one_failure_does_not_stop_others(self):
        class FlakyStore(InMemorySymbolStore):
            def _write(self, item):
                if item["SK"] == "AAPL":
                    raise OSError("throttled")
                super()._write(item)

        store = FlakyStore()
        result = seed_symbols(store, [APPLE, GOOGLE])

        assert not result.success
        assert result.entries[0].outcome == SeedOutcome.FAILED
        assert "AAPL" in result.entries[0].error
        assert store.list_symbols() == [GOOGLE]
        assert result.to_dict()["failed"] == 1

    def test_invalid_entry_does_not_stop_others(self, store):
        raw = (
            '[{"name": "Apple", "symbol": "AAPL"},'
            ' {"name": "Bad"},'
            ' {"name": "Alphabet", "symbol": "GOOG"}]'
        )

        result = seed_symbols(store, parse_symbols(raw))

        assert not result.success
        assert [(e.ticker, e.outcome) for e in result.entries] == [
            ("AAPL", SeedOutcome.CREATED),
            ("#1", SeedOutcome.FAILED),
            ("GOOG", SeedOutcome.CREATED),
        ]
        assert "no symbol" in result.entries[1].error
        assert store.list_symbols() == [APPLE, GOOGLE]
