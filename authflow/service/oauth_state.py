from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import Optional


class InvalidState(ValueError):
    """State parameter could not be decoded."""


class StateExpired(InvalidState):
    """State parameter is older than the allowed window."""


@dataclass
class OAuthState:
    device_id: str
    timestamp: int  # milliseconds since the epoch

    def age_seconds(self, now: float) -> float:
        return now - self.timestamp / 1000.0


def encode_state(device_id: str, *, now: Optional[float] = None) -> str:
    """Pack the device id and creation time for the provider to echo back."""
    issued = time.time() if now is None else now
    payload = json.dumps(
        {"deviceId": device_id, "timestamp": int(issued * 1000)}, separators=(",", ":")
    )
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_state(
    encoded: str, *, ttl_seconds: int, now: Optional[float] = None
) -> OAuthState:
    try:
        raw = base64.urlsafe_b64decode(encoded.encode("ascii"))
        data = json.loads(raw)
        state = OAuthState(device_id=str(data["deviceId"]), timestamp=int(data["timestamp"]))
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as exc:
        raise InvalidState("Invalid state parameter") from exc
    if not state.device_id:
        raise InvalidState("Invalid state parameter")
    current = time.time() if now is None else now
    if state.age_seconds(current) > ttl_seconds:
        raise StateExpired("State parameter expired")
    return state
