"""
FastAPI route modules for the market data terminal engine.
"""

from mdt_engine.api.session_routes import router as session_router

__all__ = ["session_router"]
