#!/usr/bin/env python3
"""
DASH Experiment Protocol Model

Constants and wire records shared by the DASH server and client.

This module provides:
- URL paths for the negotiate, download and collect phases
- Segment size bounds and the default rate ladder
- ClientResults / ServerResults / ServerSchema records with JSON conversion
- NegotiateRequest / NegotiateResponse records
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Optional


# =============================================================================
# PROTOCOL CONSTANTS
# =============================================================================

# Bumped from the Neubot value 3 because Web100 data is no longer collected.
CURRENT_SERVER_SCHEMA_VERSION = 4

# Historical paths: Neubot routed every experiment under /negotiate and /collect.
NEGOTIATE_PATH = "/negotiate/dash"
DOWNLOAD_PATH_NO_TRAILING_SLASH = "/dash/download"
DOWNLOAD_PATH = DOWNLOAD_PATH_NO_TRAILING_SLASH + "/"
COLLECT_PATH = "/collect/dash"

AUTHORIZATION_HEADER = "Authorization"

# Clients request two-second segments. Sizes emulate 100 kbit/s up to
# 30000 kbit/s: kbit/s * 1000 / 8 * seconds.
SEGMENT_DURATION_SEC = 2
MIN_SEGMENT_SIZE = 100 * 1000 // 8 * SEGMENT_DURATION_SEC
MAX_SEGMENT_SIZE = 30000 * 1000 // 8 * SEGMENT_DURATION_SEC

# Range of a size suffix on the wire
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

# Default DASH rates in kbit/s. Advisory only: the server ignores them.
DEFAULT_RATES: tuple[int, ...] = (
    100, 150, 200, 250, 300, 400, 500, 700, 900, 1200,
    1500, 2000, 2500, 3000, 4000, 5000, 6000, 7000, 10000, 20000,
)


class ProtocolError(ValueError):
    """A JSON document does not match the expected wire record."""


# =============================================================================
# FIELD VALIDATION
# =============================================================================

def _check_int(name: str, value: Any) -> int:
    # bool is an int subclass but is not a JSON number
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"field '{name}': expected number, got {type(value).__name__}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ProtocolError(f"field '{name}': expected integer, got {value}")
        value = int(value)
    return value


def _check_float(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"field '{name}': expected number, got {type(value).__name__}")
    return float(value)


def _check_str(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ProtocolError(f"field '{name}': expected string, got {type(value).__name__}")
    return value


# Keyed by annotation string: annotations are postponed in this module
_CHECKERS = {"int": _check_int, "float": _check_float, "str": _check_str}


def _decode_record(cls, data: Any):
    """Build a flat dataclass record from a JSON object, ignoring unknown keys."""
    if not isinstance(data, dict):
        raise ProtocolError(f"{cls.__name__}: expected JSON object, got {type(data).__name__}")
    kwargs = {}
    for f in fields(cls):
        if f.name not in data or data[f.name] is None:
            continue
        kwargs[f.name] = _CHECKERS[f.type](f.name, data[f.name])
    return cls(**kwargs)


def _decode_list(cls, data: Any) -> list:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ProtocolError(f"expected JSON array of {cls.__name__}, got {type(data).__name__}")
    return [_decode_record(cls, item) for item in data]


# =============================================================================
# WIRE RECORDS
# =============================================================================

@dataclass
class ClientResults:
    """
    Results measured by the client for a single iteration.

    Sent to the server, as a JSON array, during the collect phase. Field names
    follow the historical Neubot DASH test; server_url was added later.
    """
    connect_time: float = 0.0
    delta_sys_time: float = 0.0
    delta_user_time: float = 0.0
    elapsed: float = 0.0
    elapsed_target: int = 0
    internal_address: str = ""
    iteration: int = 0
    platform: str = ""
    rate: int = 0
    real_address: str = ""
    received: int = 0
    remote_address: str = ""
    request_ticks: float = 0.0
    server_url: str = ""
    timestamp: int = 0
    uuid: str = ""
    version: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "ClientResults":
        return _decode_record(cls, data)


@dataclass
class ServerResults:
    """Server-side timing of one completed download."""
    iteration: int = 0
    ticks: float = 0.0
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "ServerResults":
        return _decode_record(cls, data)


@dataclass
class ServerSchema:
    """Document persisted by the server for every collected session."""
    client: list[ClientResults] = field(default_factory=list)
    srvr_schema_version: int = CURRENT_SERVER_SCHEMA_VERSION
    srvr_timestamp: int = 0
    server: list[ServerResults] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "client": [c.to_dict() for c in self.client],
            "srvr_schema_version": self.srvr_schema_version,
            "srvr_timestamp": self.srvr_timestamp,
            "server": [s.to_dict() for s in self.server],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ServerSchema":
        if not isinstance(data, dict):
            raise ProtocolError(f"ServerSchema: expected JSON object, got {type(data).__name__}")
        return cls(
            client=decode_client_results(data.get("client")),
            srvr_schema_version=_check_int(
                "srvr_schema_version",
                data.get("srvr_schema_version", CURRENT_SERVER_SCHEMA_VERSION),
            ),
            srvr_timestamp=_check_int("srvr_timestamp", data.get("srvr_timestamp", 0)),
            server=decode_server_results(data.get("server")),
        )


@dataclass
class NegotiateRequest:
    dash_rates: list[int] = field(default_factory=lambda: list(DEFAULT_RATES))

    def to_dict(self) -> dict[str, Any]:
        return {"dash_rates": list(self.dash_rates)}


@dataclass
class NegotiateResponse:
    """
    Response to the negotiate request.

    unchoked is an integer for compatibility with Neubot; any non-zero
    value means the client may start immediately.
    """
    authorization: str = ""
    queue_pos: int = 0
    real_address: str = ""
    unchoked: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "NegotiateResponse":
        return _decode_record(cls, data)


# =============================================================================
# JSON HELPERS
# =============================================================================

def decode_client_results(data: Any) -> list[ClientResults]:
    """Decode a JSON array of client results; null is an empty list."""
    return _decode_list(ClientResults, data)


def decode_server_results(data: Any) -> list[ServerResults]:
    """Decode a JSON array of server results; null is an empty list."""
    return _decode_list(ServerResults, data)


def dumps_records(records: list) -> bytes:
    """Serialize a sequence of records as a compact JSON array."""
    return json.dumps([r.to_dict() for r in records], separators=(",", ":")).encode("utf-8")


def loads_json(data: bytes | str) -> Any:
    """Parse JSON, raising ProtocolError on malformed input."""
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"invalid JSON: {e}") from e


def parse_segment_size(suffix: Optional[str]) -> int:
    """
    Parse the byte count appended to the download path.

    An empty suffix means the minimum segment size. Only an optionally
    signed run of ASCII digits within the int64 range is accepted.

    Raises:
        ProtocolError: If the suffix is not an integer or is out of range
    """
    if suffix is None or suffix == "":
        return MIN_SEGMENT_SIZE
    digits = suffix[1:] if suffix[0] in "+-" else suffix
    if not digits or not (digits.isascii() and digits.isdigit()):
        raise ProtocolError(f"invalid segment size: {suffix!r}")
    # int64 has at most 19 significant digits
    if len(digits.lstrip("0")) > 19:
        raise ProtocolError(f"segment size out of range: {suffix!r}")
    try:
        value = int(suffix)
    except ValueError as e:
        raise ProtocolError(f"invalid segment size: {suffix!r}") from e
    if not INT64_MIN <= value <= INT64_MAX:
        raise ProtocolError(f"segment size out of range: {suffix!r}")
    return value
