"""
MDT Engine - Market Data Terminal streaming client

A real-time market-data streaming client supporting:
- A single persistent WebSocket session to a broadcast venue
- Login handshake correlation and subscription replay after login
- Normalized per-symbol market records merged from inbound frames
- A FastAPI control surface for terminal front-ends
"""

__version__ = "1.0.0"
__author__ = "MDT Development Team"

from mdt_engine.config import Settings, get_settings

__all__ = ["__version__", "Settings", "get_settings"]
