"""
Key/value persistence for session state.

Three logical records survive restarts: saved credentials, the saved
subscription set and the last-known login flag. The backing store is a
synchronous string key/value interface; SessionStateStore adds typed access
on top and never lets a storage failure reach the caller.
"""

import json
import os
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from mdt_engine.logging import get_logger
from mdt_engine.session.models import Credentials, SubscriptionKey

logger = get_logger(__name__)

CREDENTIALS_KEY = "session.credentials"
SUBSCRIPTIONS_KEY = "session.subscriptions"
LOGIN_FLAG_KEY = "session.was_logged_in"


class KeyValueStore(Protocol):
    """Synchronous string key/value store."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Dict-backed store (tests and ephemeral sessions)."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def as_dict(self) -> dict[str, str]:
        return dict(self._data)


class JsonFileKeyValueStore:
    """
    JSON file-backed key/value store.

    The whole file is one JSON object of string values. It is re-read on
    every access so external edits are picked up, and rewritten atomically
    on every change.
    """

    def __init__(self, file_path: Path) -> None:
        """
        Initialize the store.

        Args:
            file_path: Path of the JSON state file (parent created if missing)
        """
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

        logger.debug("JsonFileKeyValueStore initialized at %s", self._file_path)

    @property
    def file_path(self) -> Path:
        """Get the state file path."""
        return self._file_path

    def _load(self) -> dict[str, str]:
        if not self._file_path.exists():
            return {}

        try:
            with open(self._file_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self._file_path, e)
            return {}

        if not isinstance(data, dict):
            logger.warning("Ignoring state file %s: not a JSON object", self._file_path)
            return {}

        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _save(self, data: dict[str, str]) -> None:
        tmp_path = self._file_path.with_suffix(self._file_path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self._file_path)
        except Exception:
            if tmp_path.exists():
                tmp_path.unlink()
            raise

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


class SessionStateStore:
    """
    Typed access to the persisted session records.

    Every method logs and swallows storage failures: unreadable data reads
    as "nothing saved", failed writes are dropped.
    """

    def __init__(self, backend: KeyValueStore) -> None:
        self._backend = backend

    @property
    def backend(self) -> KeyValueStore:
        return self._backend

    # -------------------------------------------------------------------------
    # Raw access
    # -------------------------------------------------------------------------

    def _read(self, key: str) -> str | None:
        try:
            return self._backend.get(key)
        except Exception as e:
            logger.warning("Failed to read %s: %s", key, e)
            return None

    def _write(self, key: str, value: str) -> None:
        try:
            self._backend.set(key, value)
        except Exception as e:
            logger.warning("Failed to write %s: %s", key, e)

    def _delete(self, key: str) -> None:
        try:
            self._backend.remove(key)
        except Exception as e:
            logger.warning("Failed to remove %s: %s", key, e)

    def _read_json(self, key: str) -> Any:
        raw = self._read(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring malformed %s: %s", key, e)
            return None

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    def load_credentials(self) -> Credentials | None:
        """Saved credentials, or None if absent or malformed."""
        data = self._read_json(CREDENTIALS_KEY)
        if data is None:
            return None
        try:
            return Credentials.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring malformed saved credentials: %s", e.error_count())
            return None

    def save_credentials(self, credentials: Credentials) -> None:
        self._write(CREDENTIALS_KEY, credentials.model_dump_json(by_alias=True))

    def has_credentials(self) -> bool:
        return self._read(CREDENTIALS_KEY) is not None

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def load_subscriptions(self) -> list[SubscriptionKey] | None:
        """
        Saved subscription set.

        Returns:
            Valid keys in saved order, or None if nothing usable is saved.
            Individual malformed entries are skipped.
        """
        data = self._read_json(SUBSCRIPTIONS_KEY)
        if data is None:
            return None
        if not isinstance(data, list):
            logger.warning("Ignoring saved subscriptions: expected a list")
            return None

        keys: list[SubscriptionKey] = []
        for item in data:
            try:
                keys.append(SubscriptionKey.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed saved subscription: %r", item)
        return keys

    def save_subscriptions(self, keys: list[SubscriptionKey]) -> None:
        payload = [key.model_dump(by_alias=True, mode="json") for key in keys]
        self._write(SUBSCRIPTIONS_KEY, json.dumps(payload))

    def clear_subscriptions(self) -> None:
        self._delete(SUBSCRIPTIONS_KEY)

    # -------------------------------------------------------------------------
    # Login flag
    # -------------------------------------------------------------------------

    def load_login_flag(self) -> bool:
        return self._read(LOGIN_FLAG_KEY) == "true"

    def save_login_flag(self, logged_in: bool) -> None:
        self._write(LOGIN_FLAG_KEY, "true" if logged_in else "false")

    def clear_login_flag(self) -> None:
        self._delete(LOGIN_FLAG_KEY)
