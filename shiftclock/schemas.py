from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal
from pydantic import BaseModel, ConfigDict, Field

TimestampType = Literal["check-in", "check-out"]

class ReasonCode(str, Enum):
    MISSING_TOKEN = "MISSING_TOKEN"
    NO_ACTIVE_TOKEN = "NO_ACTIVE_TOKEN"
    TOKEN_MISMATCH = "TOKEN_MISMATCH"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_NOT_VALID_YET = "TOKEN_NOT_VALID_YET"
    VALID = "VALID"
    VALIDATION_ERROR = "VALIDATION_ERROR"

class ValidationOutcome(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(alias="isValid")
    reason_code: ReasonCode = Field(alias="reasonCode")
    message: str
    timestamp_type: TimestampType | None = Field(default=None, alias="timestampType")

class ScheduleWrite(BaseModel):
    """Before/after pair of a schedule record, as delivered by the write trigger."""
    model_config = ConfigDict(populate_by_name=True)

    event_id: str | None = Field(default=None, alias="eventId")
    user_id: str | None = Field(default=None, alias="userId")
    schedule_id: str | None = Field(default=None, alias="scheduleId")
    before: Dict[str, Any] | None = None
    after: Dict[str, Any] = Field(default_factory=dict)

class QRCurrentResponse(BaseModel):
    status: Literal["loading", "ready", "missing", "error"]
    message: str | None = None
    value: str | None = None
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    writer_error: str | None = None
    next_rotation_at: datetime | None = None

class QRValidateRequest(BaseModel):
    token: Any = None  # validated by the token validator, not by pydantic

# --- shift summaries

class WageRate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rate: float
    effective_from: str = Field(alias="effectiveFrom")  # YYYY-MM-DD

class ShiftSummaryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shifts: List[Dict[str, Any]]
    hourly_wage: float = Field(default=0.0, alias="hourlyWage")
    wage_history: List[WageRate] = Field(default_factory=list, alias="wageHistory")

class ShiftSummary(BaseModel):
    event_date: str | None = None
    worked_hours: float | None = None
    status: Literal["completed", "in_progress", "scheduled"]

class DayEarnings(BaseModel):
    date: str
    total_hours: float
    regular_hours: float
    overtime_hours: float
    overtime_applied: bool
    hourly_wage: float
    day_earnings: float

class ShiftSummaryResponse(BaseModel):
    shifts: List[ShiftSummary]
    days: List[DayEarnings]
    total_hours: float
    total_earnings: float
    overtime_threshold: float
    overtime_percent: float
