from __future__ import annotations
from collections import defaultdict
from typing import Dict
from fastapi import APIRouter, Depends

from ..core.config import get_settings
from ..deps import get_claims, get_validator
from ..schemas import (
    DayEarnings, ScheduleWrite, ShiftSummary, ShiftSummaryRequest, ShiftSummaryResponse, ValidationOutcome,
)
from ..services.shifts import compute_worked_hours_for_shift, derive_shift_status, split_weekly_overtime
from ..services.validator import TokenValidator

settings = get_settings()
router = APIRouter(prefix="/schedules", tags=["schedules"])

# --- 1) Write trigger over HTTP (same handler as the NATS consumer).
# Always 200: the write already committed and must not be retried because of validation.
@router.post("/writes", response_model=ValidationOutcome | None, response_model_by_alias=True)
async def schedule_write(
    payload: ScheduleWrite,
    claims: dict = Depends(get_claims),
    validator: TokenValidator = Depends(get_validator),
):
    return await validator.handle_schedule_write(payload)

# --- 2) Worked hours, status and weekly overtime for a batch of shifts
@router.post("/summary", response_model=ShiftSummaryResponse)
async def shift_summary(payload: ShiftSummaryRequest):
    shifts = []
    per_day: Dict[str, float] = defaultdict(float)
    for s in payload.shifts:
        hours = compute_worked_hours_for_shift(s)
        event_date = s.get("eventDate")
        shifts.append(ShiftSummary(event_date=event_date, worked_hours=hours, status=derive_shift_status(s)))
        if event_date and hours:
            per_day[event_date] += hours

    history = [w.model_dump(by_alias=True) for w in sorted(payload.wage_history, key=lambda w: w.effective_from)]
    days = split_weekly_overtime(
        per_day.items(),
        threshold_hours=settings.overtime_threshold_hours,
        multiplier=settings.overtime_multiplier,
        hourly_wage=payload.hourly_wage,
        wage_history=history,
    )
    return ShiftSummaryResponse(
        shifts=shifts,
        days=[DayEarnings(**d) for d in days],
        total_hours=round(sum(d["total_hours"] for d in days), 2),
        total_earnings=round(sum(d["day_earnings"] for d in days), 2),
        overtime_threshold=settings.overtime_threshold_hours,
        overtime_percent=settings.overtime_percent,
    )
