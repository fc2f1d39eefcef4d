"""
In-memory market data store.

Maps symbol -> MarketRecord. Records are merged field by field from
successive frames and destroyed only when their subscription goes away.
"""

from collections.abc import Iterator
from typing import Any

from mdt_engine.logging import get_logger
from mdt_engine.market_data.models import MarketRecord
from mdt_engine.session.codec import normalize_market_fields

logger = get_logger(__name__)


class MarketDataStore:
    """Latest normalized record per symbol."""

    def __init__(self) -> None:
        self._records: dict[str, MarketRecord] = {}

    def ingest(self, symbol: str, raw_fields: dict[str, Any]) -> MarketRecord:
        """
        Create or merge the record for a symbol.

        Args:
            symbol: Symbol the frame belongs to
            raw_fields: Raw frame fields (aliases resolved here)

        Returns:
            The stored record after the merge
        """
        canonical, extra = normalize_market_fields(raw_fields)

        record = self._records.get(symbol)
        if record is None:
            record = MarketRecord(symbol=symbol)
            self._records[symbol] = record
            logger.debug("Created market record for %s", symbol)

        record.merge(canonical, extra)
        return record

    def get(self, symbol: str) -> MarketRecord | None:
        return self._records.get(symbol)

    def remove(self, symbol: str) -> bool:
        """
        Delete a record entirely.

        Returns:
            True if a record was deleted
        """
        return self._records.pop(symbol, None) is not None

    def clear(self) -> None:
        """Delete every record."""
        self._records.clear()

    def snapshot(self) -> dict[str, MarketRecord]:
        """Copy of the symbol -> record mapping."""
        return {symbol: record.model_copy(deep=True) for symbol, record in self._records.items()}

    def symbols(self) -> list[str]:
        return list(self._records)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))

    def __len__(self) -> int:
        return len(self._records)
