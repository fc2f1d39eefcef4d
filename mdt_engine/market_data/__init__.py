"""
Market data records built from inbound stream frames.

Provides:
- MarketRecord: latest merged view of one symbol
- MarketDataStore: symbol -> record map fed by the session
"""

from mdt_engine.market_data.models import MarketRecord
from mdt_engine.market_data.store import MarketDataStore

__all__ = [
    "MarketRecord",
    "MarketDataStore",
]
