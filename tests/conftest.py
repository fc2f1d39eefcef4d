"""
Pytest configuration and shared fixtures.
"""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

# Set test environment variables before importing app modules
os.environ.setdefault("MDT_ENV", "development")
os.environ.setdefault("MDT_DATA_DIR", tempfile.mkdtemp(prefix="mdt-test-"))
os.environ.setdefault("MDT_AUTO_CONNECT_ON_START", "false")

# Import shared session fixtures
from tests.session_fixtures import *  # noqa: E402, F403


@pytest.fixture(scope="session")
def temp_data_dir() -> Generator[Path, None, None]:
    """Create a temporary data directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure no real session identifiers leak into tests from the environment."""
    session_vars = [
        "MDT_DEFAULT_GSCID",
        "MDT_DEFAULT_GCID",
        "MDT_DEFAULT_SESSION_ID",
        "MDT_DEFAULT_DEVICE_ID",
        "MDT_WS_URL",
        "MDT_STATE_FILE",
    ]
    for var in session_vars:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset module-level singletons between tests."""
    # Run the test
    yield

    # Reset singletons after each test
    from mdt_engine.api import session_routes
    from mdt_engine.runtime.event_bus import reset_event_bus

    session_routes.reset_session_manager()
    session_routes.reset_notification_log()
    reset_event_bus()
