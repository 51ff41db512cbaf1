from __future__ import annotations
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping
import structlog

from ..core.store import TokenStore
from ..core.tokens import to_datetime
from ..schemas import ReasonCode, ScheduleWrite, TimestampType, ValidationOutcome

logger = structlog.get_logger()

CHECK_IN_FIELD = "checkInTimestamp"
CHECK_OUT_FIELD = "checkOutTimestamp"
TOKEN_FIELD = "qrTokenUsed"

MESSAGES = {
    ReasonCode.MISSING_TOKEN: "No token provided",
    ReasonCode.NO_ACTIVE_TOKEN: "No active QR token found in system",
    ReasonCode.TOKEN_MISMATCH: "Invalid or expired token",
    ReasonCode.TOKEN_EXPIRED: "Token has expired",
    ReasonCode.TOKEN_NOT_VALID_YET: "Token not yet valid",
    ReasonCode.VALID: "Token validation successful",
    ReasonCode.VALIDATION_ERROR: "Validation error occurred",
}

def _now():
    return datetime.now(timezone.utc)

def _outcome(code: ReasonCode, timestamp_type: TimestampType | None = None) -> ValidationOutcome:
    return ValidationOutcome(
        is_valid=code is ReasonCode.VALID,
        reason_code=code,
        message=MESSAGES[code],
        timestamp_type=timestamp_type,
    )

def _field_changed(before: Mapping[str, Any], after: Mapping[str, Any], field: str) -> bool:
    new = after.get(field)
    if new is None:
        return False
    old = before.get(field)
    if old is None:
        return True
    old_dt, new_dt = to_datetime(old), to_datetime(new)
    if old_dt is not None and new_dt is not None:
        return old_dt != new_dt
    return old != new

def timestamp_change(before: Mapping[str, Any] | None, after: Mapping[str, Any] | None) -> TimestampType | None:
    """Which punch a write carries, or None for unrelated edits. Check-in wins if both moved."""
    before, after = before or {}, after or {}
    if _field_changed(before, after, CHECK_IN_FIELD):
        return "check-in"
    if _field_changed(before, after, CHECK_OUT_FIELD):
        return "check-out"
    return None

class EventLedger:
    """In-process replacement for the Redis SET NX claim, for the memory backend."""

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._seen: Dict[str, float] = {}

    async def claim(self, event_id: str) -> bool:
        now = self.clock()
        self._seen = {k: exp for k, exp in self._seen.items() if exp > now}
        if event_id in self._seen:
            return False
        self._seen[event_id] = now + self.ttl_seconds
        return True

class TokenValidator:
    """
    Audits check-in/check-out writes against the latest issued token.

    The write has already committed when this runs; outcomes are only reported
    (publish callback), never used to block or revert it. The read of the latest
    token and the decision are not atomic: a rotation landing in between can
    reject a token that was current a moment earlier.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        clock: Callable[[], datetime] = _now,
        claim_event: Callable[[str], Awaitable[bool]] | None = None,
        publish: Callable[[dict], Awaitable[None]] | None = None,
    ):
        self.store = store
        self.clock = clock
        self.claim_event = claim_event
        self.publish = publish

    async def validate(self, provided: Any, *, timestamp_type: TimestampType | None = None) -> ValidationOutcome:
        if not isinstance(provided, str) or not provided:
            return _outcome(ReasonCode.MISSING_TOKEN, timestamp_type)
        try:
            token = await self.store.latest()
            if token is None:
                return _outcome(ReasonCode.NO_ACTIVE_TOKEN, timestamp_type)
            # exact match first: a replayed stale token then reads as expired, not mismatched
            if provided != token.value:
                return _outcome(ReasonCode.TOKEN_MISMATCH, timestamp_type)
            now = self.clock()
            if now > token.expires_at:
                return _outcome(ReasonCode.TOKEN_EXPIRED, timestamp_type)
            if now < token.issued_at:
                return _outcome(ReasonCode.TOKEN_NOT_VALID_YET, timestamp_type)
        except Exception as exc:
            logger.error("QR token validation error", error=str(exc))
            return _outcome(ReasonCode.VALIDATION_ERROR, timestamp_type)
        return _outcome(ReasonCode.VALID, timestamp_type)

    async def handle_schedule_write(self, write: ScheduleWrite | dict) -> ValidationOutcome | None:
        """Validate one schedule write event. Never raises; returns None when nothing was validated."""
        try:
            if not isinstance(write, ScheduleWrite):
                write = ScheduleWrite.model_validate(write)

            kind = timestamp_change(write.before, write.after)
            if kind is None:
                return None

            if write.event_id and self.claim_event is not None:
                if not await self.claim_event(write.event_id):
                    logger.info("Duplicate schedule write ignored", event_id=write.event_id)
                    return None

            log = logger.bind(user_id=write.user_id, schedule_id=write.schedule_id, timestamp_type=kind)
            log.info("Timestamp update detected")

            outcome = await self.validate(write.after.get(TOKEN_FIELD), timestamp_type=kind)
            if outcome.is_valid:
                log.info("Valid token used for timestamp update")
            else:
                log.warning("Invalid token used", reason_code=outcome.reason_code.value, detail=outcome.message)

            if self.publish is not None:
                evt = outcome.model_dump(by_alias=True, mode="json")
                evt.update({
                    "userId": write.user_id,
                    "scheduleId": write.schedule_id,
                    "validatedAt": self.clock().isoformat().replace("+00:00", "Z"),
                })
                try:
                    await self.publish(evt)
                except Exception as exc:
                    log.warning("Publishing validation outcome failed", error=str(exc))
            return outcome
        except Exception as exc:
            logger.error("Error in timestamp validation", error=str(exc))
            return None
