from __future__ import annotations
import asyncio
from contextlib import suppress
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict
import structlog

from ..core.store import TokenStore
from ..core.tokens import EmptyTokenRecord, QRToken, issue_token, next_rotation_delay

logger = structlog.get_logger()

ROTATION_JOB_ID = "qr-token-rotation"
WRITER_ERROR = "Failed to refresh the QR code. Retrying…"

STATUS_MESSAGES = {
    "loading": "Waiting for the QR code…",
    "missing": "No QR token is configured yet.",
    "error": "Unable to load the QR token. Please contact support.",
    "ready": None,
}

def _now():
    return datetime.now(timezone.utc)

class TokenIssuer:
    """
    Keeps one fresh token in the store.

    Two independent loops:
      - the watch loop follows the store and drives status (loading -> ready | missing | error);
        every snapshot re-arms the rotation timer at or before the observed expiry.
      - the rotation timer is a single APScheduler date job with a fixed id, so arming it
        always replaces the previous one. A rotation already in flight is never doubled.
    Write failures leave the previous token in place and only set writer_error.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        scheduler,
        window_seconds: float = 60,
        retry_seconds: float = 5.0,
        clock: Callable[[], datetime] = _now,
        job_id: str = ROTATION_JOB_ID,
    ):
        self.store = store
        self.scheduler = scheduler
        self.window_seconds = window_seconds
        self.retry_seconds = retry_seconds
        self.clock = clock
        self.job_id = job_id

        self.status = "loading"
        self.current: QRToken | None = None
        self.writer_error = ""
        self.next_rotation_at: datetime | None = None

        self._rotating = False
        self._watch_task: asyncio.Task | None = None

    # --- lifecycle

    async def start(self) -> None:
        self.status = "loading"
        self._watch_task = asyncio.create_task(self._watch())
        await self.rotate()

    async def stop(self) -> None:
        self._cancel_timer()
        if self._watch_task is not None:
            self._watch_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._watch_task
            self._watch_task = None

    # --- rotation

    async def rotate(self) -> QRToken | None:
        if self._rotating:
            logger.debug("Rotation already in flight, skipping")
            return None
        self._rotating = True
        token = issue_token(now=self.clock(), window_seconds=self.window_seconds)
        try:
            await self.store.put(token)
        except Exception as exc:
            self.writer_error = WRITER_ERROR
            logger.warning("QR token rotation failed", error=str(exc), retry_in=self.retry_seconds)
            # previous token stays valid until a write commits
            self._schedule(min(self.retry_seconds, self.window_seconds))
            return None
        finally:
            self._rotating = False

        self.writer_error = ""
        logger.info("QR token rotated", issued_at=token.issued_at.isoformat(), expires_at=token.expires_at.isoformat())
        self._reschedule(token.expires_at)
        return token

    async def _fire(self) -> None:
        await self.rotate()

    def _reschedule(self, expires_at: datetime | None) -> None:
        delay = next_rotation_delay(expires_at, now=self.clock(), window_seconds=self.window_seconds)
        if self.writer_error:
            delay = min(delay, self.retry_seconds)
        self._schedule(delay)

    def _schedule(self, delay: float) -> None:
        run_date = self.clock() + timedelta(seconds=delay)
        self.scheduler.add_job(
            self._fire,
            "date",
            run_date=run_date,
            id=self.job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )
        self.next_rotation_at = run_date

    def _cancel_timer(self) -> None:
        if self.scheduler.get_job(self.job_id) is not None:
            self.scheduler.remove_job(self.job_id)
        self.next_rotation_at = None

    # --- store subscription

    async def _watch(self) -> None:
        while True:
            try:
                # the first event arrives once subscribed and drives the initial read
                async for _ in self.store.changes():
                    await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.current = None
                self.status = "error"
                logger.warning("QR token subscription failed", error=str(exc))
                await asyncio.sleep(self.retry_seconds)

    async def refresh(self) -> None:
        try:
            token = await self.store.latest()
        except EmptyTokenRecord:
            token = None
        self.current = token
        self.status = "ready" if token is not None else "missing"
        self._reschedule(token.expires_at if token else None)

    def snapshot(self) -> Dict[str, Any]:
        token = self.current
        return {
            "status": self.status,
            "message": STATUS_MESSAGES.get(self.status),
            "value": token.value if token else None,
            "issued_at": token.issued_at if token else None,
            "expires_at": token.expires_at if token else None,
            "writer_error": self.writer_error or None,
            "next_rotation_at": self.next_rotation_at,
        }
