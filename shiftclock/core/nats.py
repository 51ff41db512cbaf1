from __future__ import annotations
import json
from typing import Sequence, Awaitable, Callable
import structlog
from nats.aio.client import Client as NATS
from .config import get_settings

_settings = get_settings()
_nats = NATS()
logger = structlog.get_logger()

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers)

async def nats_close():
    try:
        if _nats.is_connected:
            await _nats.drain()
    except Exception:
        pass

async def subscribe_schedule_writes(cb: Callable[[dict], Awaitable[None]]):
    """
    Subscribe to schedules.updated and invoke cb(evt_dict).
    evt example:
      {
        "event_id": "…",
        "user_id": "…",
        "schedule_id": "…",
        "before": {"checkInTimestamp": null, …},
        "after": {"checkInTimestamp": "2025-10-23T18:00:00Z", "qrTokenUsed": "…", …}
      }
    """
    await nats_connect()
    async def _handler(msg):
        try:
            data = json.loads(msg.data)
            await cb(data)
        except Exception as exc:
            # keep the subscription alive
            logger.warning("Schedule write handler failed", subject=msg.subject, error=str(exc))
    await _nats.subscribe(_settings.nats_subject_schedule_writes, cb=_handler)

async def publish_validation(evt: dict):
    """
    evt = {
      "userId": str, "scheduleId": str,
      "isValid": bool, "reasonCode": str, "message": str,
      "timestampType": "check-in" | "check-out",
      "validatedAt": iso8601
    }
    """
    await nats_connect()
    await _nats.publish(_settings.nats_subject_validation, json.dumps(evt).encode("utf-8"))
