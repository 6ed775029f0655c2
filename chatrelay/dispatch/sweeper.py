"""Periodic recovery of keys and sessions whose rate-limit cool-down elapsed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update

from chatrelay.core.timeutils import utcnow
from chatrelay.storage.database import session_scope
from chatrelay.storage.models import ChatSession, KeyStatus, ProviderKey, SessionStatus
from chatrelay.telemetry.events import record_event

logger = logging.getLogger("chatrelay.sweeper")


@dataclass(frozen=True)
class SweepResult:
    keys_recovered: int
    sessions_recovered: int


def run_recovery_sweep(now: datetime | None = None) -> SweepResult:
    """Reactivate expired rate-limited keys and the sessions parked on them.

    Runs in one transaction. Every update is guarded on the old status, so a
    repeated sweep without the clock moving changes nothing.
    """
    current = now or utcnow()
    with session_scope() as session:
        recovered_keys = session.execute(
            update(ProviderKey)
            .where(ProviderKey.status == KeyStatus.RATE_LIMITED)
            .where(ProviderKey.rate_limit_reset_at.is_not(None))
            .where(ProviderKey.rate_limit_reset_at <= current)
            .values(status=KeyStatus.ACTIVE, rate_limit_reset_at=None, updated_at=current)
            .returning(ProviderKey.id)
            .execution_options(synchronize_session=False)
        ).scalars().all()

        # Also catches sessions whose key was recovered by an on-demand check.
        active_keys = select(ProviderKey.id).where(ProviderKey.status == KeyStatus.ACTIVE)
        recovered_sessions = session.execute(
            update(ChatSession)
            .where(ChatSession.status == SessionStatus.PENDING_RATE_LIMIT)
            .where(ChatSession.key_id.in_(active_keys))
            .values(status=SessionStatus.ACTIVE, updated_at=current)
            .returning(ChatSession.id)
            .execution_options(synchronize_session=False)
        ).scalars().all()

    result = SweepResult(
        keys_recovered=len(recovered_keys), sessions_recovered=len(recovered_sessions)
    )
    if result.keys_recovered or result.sessions_recovered:
        logger.info(
            "Rate limits lifted",
            extra={
                "event": "rate_limit_sweep",
                "keys_recovered": result.keys_recovered,
                "sessions_recovered": result.sessions_recovered,
            },
        )
        record_event(
            "rate_limit_sweep",
            "INFO",
            message=(
                f"Reset {result.keys_recovered} key(s) and "
                f"{result.sessions_recovered} chat session(s)"
            ),
            meta={"key_ids": list(recovered_keys), "session_ids": list(recovered_sessions)},
        )
    return result


class RecoverySweeper:
    """Runs :func:`run_recovery_sweep` on a fixed interval as an asyncio task."""

    def __init__(self, interval_seconds: float) -> None:
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="rate-limit-sweeper")
        logger.info(
            "Recovery sweeper started",
            extra={"event": "sweeper_started", "interval_seconds": self._interval},
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                run_recovery_sweep()
            except Exception:
                logger.exception("Recovery sweep failed", extra={"event": "sweep_error"})


__all__ = ["RecoverySweeper", "SweepResult", "run_recovery_sweep"]
