from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict
import itertools
import random
import secrets
import time

TOKEN_BYTES = 16  # 128 bits

class MalformedTokenRecord(ValueError):
    pass

class EmptyTokenRecord(MalformedTokenRecord):
    """A record exists but carries no token value."""

def _now():
    return datetime.now(timezone.utc)

@dataclass(frozen=True)
class QRToken:
    value: str
    issued_at: datetime
    expires_at: datetime

    def to_record(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "issuedAt": to_millis(self.issued_at),
            "expiresAt": to_millis(self.expires_at),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "QRToken":
        value = data.get("value")
        if not isinstance(value, str) or not value:
            raise EmptyTokenRecord("token record has no value")
        issued_at = to_datetime(data.get("issuedAt"))
        expires_at = to_datetime(data.get("expiresAt"))
        if issued_at is None or expires_at is None:
            raise MalformedTokenRecord("token record is missing issuedAt/expiresAt")
        return cls(value=value, issued_at=issued_at, expires_at=expires_at)

# --- token values

_fallback_counter = itertools.count()

def _fallback_token_value() -> str:
    # random segment + monotonic time segment, so two calls never repeat trivially
    seg = lambda: format(random.getrandbits(40), "x")
    return f"{seg()}-{time.monotonic_ns():x}{next(_fallback_counter):x}-{seg()}"

def generate_token_value() -> str:
    try:
        return secrets.token_urlsafe(TOKEN_BYTES)
    except NotImplementedError:
        # os.urandom unavailable on this platform
        return _fallback_token_value()

# --- time-window policy

def issue_token(*, now: datetime | None = None, window_seconds: float = 60) -> QRToken:
    issued = from_millis(to_millis(now or _now()))
    return QRToken(
        value=generate_token_value(),
        issued_at=issued,
        expires_at=issued + timedelta(seconds=window_seconds),
    )

def next_rotation_delay(expires_at: datetime | None, *, now: datetime | None = None, window_seconds: float = 60) -> float:
    """Seconds until the next rotation: never past expiry, never more than one window."""
    if expires_at is None:
        return float(window_seconds)
    remaining = (expires_at - (now or _now())).total_seconds()
    return min(max(remaining, 0.0), float(window_seconds))

# --- timestamp normalization

def to_millis(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return delta.days * 86_400_000 + delta.seconds * 1000 + delta.microseconds // 1000

def from_millis(ms: int) -> datetime:
    return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=int(ms))

def to_datetime(raw: Any) -> datetime | None:
    """
    Accepts the shapes timestamps arrive in from clients and the store:
    datetime, epoch milliseconds (int/float or digit string), ISO-8601 strings,
    and document-store timestamps {"seconds", "nanoseconds"} (or "_seconds"/"_nanoseconds").
    Returns None for anything else.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, (int, float)):
        return from_millis(int(raw))
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        s = raw.strip()
        if not s:
            return None
        if s.lstrip("-").isdigit():
            return from_millis(int(s))
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    if isinstance(raw, dict):
        seconds = raw.get("seconds", raw.get("_seconds"))
        nanos = raw.get("nanoseconds", raw.get("_nanoseconds", 0)) or 0
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            return from_millis(int(seconds) * 1000 + int(nanos) // 1_000_000)
    return None
