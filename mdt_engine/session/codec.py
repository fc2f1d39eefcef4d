"""
Wire codec for the broadcast streaming protocol.

Outbound requests share one envelope:

    {"request": {"request_type": "subscribe"|"unsubscribe",
                 "streamingType": <kind>, "data": {...},
                 "gscid": ..., "gcid": ..., ...}}

Inbound frames are JSON objects. The session learns server state only
through the two detection rules implemented here: the login confirmation and
market data extraction.
"""

import json
import math
from typing import Any

from mdt_engine.session.errors import DecodeError
from mdt_engine.session.models import Credentials, RequestType, StreamKind

# Service name carried by the login confirmation frame
BROADCAST_SERVICE = "Broadcast"

# device_type sent with the login/logout handshake
DEVICE_TYPE = "0"

RESPONSE_FORMAT = "json"

# Canonical market fields and their wire aliases, primary alias first
CANONICAL_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "ltp": ("ltp",),
    "change": ("change",),
    "change_percent": ("p_change", "changePercent"),
    "volume": ("tot_vol", "volume"),
    "high": ("high",),
    "low": ("low",),
    "open": ("open",),
    "close": ("close",),
}

_CONSUMED_KEYS = {"symbol"} | {
    alias for aliases in CANONICAL_FIELD_ALIASES.values() for alias in aliases
}


# =============================================================================
# Outbound
# =============================================================================


def _handshake_request(
    credentials: Credentials,
    request_type: RequestType,
    kind: StreamKind,
) -> dict[str, Any]:
    return {
        "request": {
            "response_format": RESPONSE_FORMAT,
            "request_type": request_type.value,
            "streamingType": kind.value,
            "data": {
                "gscid": credentials.gscid,
                "gcid": credentials.gcid,
                "sessionId": credentials.session_id,
                "deviceId": credentials.device_id,
                "device_type": DEVICE_TYPE,
            },
            "gscid": credentials.gscid,
            "gcid": credentials.gcid,
        }
    }


def build_login_request(credentials: Credentials) -> dict[str, Any]:
    """Build the login handshake (a subscribe with streamingType=login)."""
    return _handshake_request(credentials, RequestType.SUBSCRIBE, StreamKind.LOGIN)


def build_logout_request(credentials: Credentials) -> dict[str, Any]:
    """Build the logout handshake (an unsubscribe with streamingType=logout)."""
    return _handshake_request(credentials, RequestType.UNSUBSCRIBE, StreamKind.LOGOUT)


def _symbol_request(
    token: str,
    kind: StreamKind,
    credentials: Credentials,
    request_type: RequestType,
) -> dict[str, Any]:
    if not kind.is_data_kind:
        raise ValueError(f"Cannot {request_type.value} to stream kind {kind.value}")
    return {
        "request": {
            "request_type": request_type.value,
            "streamingType": kind.value,
            "data": {"symbols": [{"symbol": token}]},
            "gscid": credentials.gscid,
            "gcid": credentials.gcid,
        }
    }


def build_subscribe_request(
    token: str, kind: StreamKind, credentials: Credentials
) -> dict[str, Any]:
    """
    Build a subscribe request for one token.

    Args:
        token: Exchange-qualified token (e.g. NSECM:2885)
        kind: Data stream kind
        credentials: Session credentials

    Returns:
        Request envelope

    Raises:
        ValueError: If kind is a handshake-only kind
    """
    return _symbol_request(token, kind, credentials, RequestType.SUBSCRIBE)


def build_unsubscribe_request(
    token: str, kind: StreamKind, credentials: Credentials
) -> dict[str, Any]:
    """Build an unsubscribe request for one token."""
    return _symbol_request(token, kind, credentials, RequestType.UNSUBSCRIBE)


def encode_request(request: dict[str, Any]) -> str:
    """Serialize a request envelope to wire text."""
    return json.dumps(request, separators=(",", ":"))


# =============================================================================
# Inbound
# =============================================================================


def decode_frame(payload: str | bytes) -> dict[str, Any]:
    """
    Parse an inbound frame.

    Args:
        payload: Raw text (or bytes) received from the transport

    Returns:
        Parsed JSON object

    Raises:
        DecodeError: If the payload is empty, not JSON, or not a JSON object
    """
    if isinstance(payload, bytes):
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Frame is not UTF-8: {e}", raw=repr(payload)) from e
    else:
        text = payload

    if not text.strip():
        raise DecodeError("Empty frame", raw=text)

    try:
        parsed = json.loads(text)
    except ValueError as e:
        # JSONDecodeError, or an integer literal over the int digit limit
        raise DecodeError(f"Frame is not JSON: {e}", raw=text) from e

    if not isinstance(parsed, dict):
        raise DecodeError(
            f"Frame is a JSON {type(parsed).__name__}, expected an object", raw=text
        )
    return parsed


def _response(frame: dict[str, Any]) -> dict[str, Any] | None:
    response = frame.get("response")
    return response if isinstance(response, dict) else None


def is_login_confirmation(frame: dict[str, Any]) -> bool:
    """True if the frame confirms the login handshake."""
    response = _response(frame)
    if response is None:
        return False
    return (
        response.get("svcName") == BROADCAST_SERVICE
        and response.get("streamingType") == StreamKind.LOGIN.value
    )


def _symbol_of(fields: dict[str, Any]) -> str | None:
    symbol = fields.get("symbol")
    # bool is an int subclass but never a token
    if isinstance(symbol, bool):
        return None
    if isinstance(symbol, int):
        return str(symbol)
    if isinstance(symbol, str) and symbol.strip():
        return symbol.strip()
    return None


def extract_market_data(frame: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
    """
    Find market data in a frame.

    Accepted shapes, in order:
    - ``{"response": {"data": {"symbol": ..., ...}}}``
    - ``{"symbol": ..., ...}``

    Returns:
        (symbol, raw fields) or None if the frame carries no symbol
    """
    response = _response(frame)
    if response is not None:
        data = response.get("data")
        if isinstance(data, dict):
            symbol = _symbol_of(data)
            if symbol is not None:
                return symbol, data

    symbol = _symbol_of(frame)
    if symbol is not None:
        return symbol, frame
    return None


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            number = float(value.replace(",", "").strip())
        else:
            return None
    except (OverflowError, ValueError):
        return None
    # NaN and infinities would read as "no data" once serialized
    return number if math.isfinite(number) else None


def normalize_market_fields(
    fields: dict[str, Any],
) -> tuple[dict[str, float], dict[str, Any]]:
    """
    Split raw market fields into canonical values and pass-through extras.

    Aliases are resolved primary first (``p_change`` before ``changePercent``,
    ``tot_vol`` before ``volume``). Absent, null and unparseable values are
    left out of the canonical dict so that "no data yet" never reads as zero.

    Returns:
        (canonical fields keyed by attribute name, extra fields)
    """
    canonical: dict[str, float] = {}
    for name, aliases in CANONICAL_FIELD_ALIASES.items():
        for alias in aliases:
            number = _to_number(fields.get(alias))
            if number is not None:
                canonical[name] = number
                break

    extra = {
        key: value
        for key, value in fields.items()
        if key not in _CONSUMED_KEYS and value is not None
    }
    return canonical, extra
