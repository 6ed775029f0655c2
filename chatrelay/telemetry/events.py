"""Event recording helpers for dispatch telemetry."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from sqlalchemy import delete, select

from chatrelay.core.timeutils import isoformat
from chatrelay.logging import get_request_id
from chatrelay.storage.database import session_scope
from chatrelay.storage.models import DispatchEvent

logger = logging.getLogger("chatrelay.events")

_RETENTION_DAYS = 2  # keep today + yesterday


def _events_enabled() -> bool:
    return os.getenv("EVENTS_ENABLED", "true").lower() in {"1", "true", "yes"}


def _current_retention_cutoff() -> datetime:
    """Return the UTC timestamp cutoff for events to retain."""
    now_utc = datetime.now(timezone.utc)
    start_of_today = datetime(now_utc.year, now_utc.month, now_utc.day, tzinfo=timezone.utc)
    return start_of_today - timedelta(days=_RETENTION_DAYS - 1)


def _prune_old_events(session) -> None:
    session.execute(delete(DispatchEvent).where(DispatchEvent.ts < _current_retention_cutoff()))


def record_event(
    kind: str,
    level: str,
    *,
    message: str | None = None,
    request_id: str | None = None,
    meta: Dict[str, Any] | None = None,
    provider_code: str | None = None,
    key_id: int | None = None,
    session_id: int | None = None,
) -> None:
    """Persist a dispatch event; failures are logged and never raised."""
    if not _events_enabled():
        return

    event = DispatchEvent(
        ts=datetime.now(timezone.utc),
        level=level.upper(),
        kind=kind,
        request_id=request_id or get_request_id(),
        provider_code=provider_code,
        key_id=key_id,
        session_id=session_id,
        message=message[:512] if message else None,
        meta=json.dumps(meta, ensure_ascii=True, default=str) if meta else None,
    )

    try:
        with session_scope() as session:
            session.add(event)
            _prune_old_events(session)
    except Exception:
        logger.exception(
            "Failed to record event", extra={"event": "event_persist_error", "kind": kind}
        )


def list_recent_events(limit: int = 50, kind: str | None = None) -> List[Dict[str, Any]]:
    """Return recent events ordered newest first."""
    if not _events_enabled():
        return []

    with session_scope() as session:
        _prune_old_events(session)

        stmt = select(DispatchEvent).where(DispatchEvent.ts >= _current_retention_cutoff())
        if kind:
            stmt = stmt.where(DispatchEvent.kind == kind)
        stmt = stmt.order_by(DispatchEvent.ts.desc(), DispatchEvent.id.desc()).limit(limit)
        rows = session.scalars(stmt).all()

    events: List[Dict[str, Any]] = []
    for row in rows:
        meta_value: Dict[str, Any] | str | None = None
        if row.meta:
            try:
                meta_value = json.loads(row.meta)
            except json.JSONDecodeError:
                meta_value = row.meta

        events.append(
            {
                "id": row.id,
                "timestamp": isoformat(row.ts),
                "level": row.level,
                "kind": row.kind,
                "request_id": row.request_id,
                "provider_code": row.provider_code,
                "key_id": row.key_id,
                "session_id": row.session_id,
                "message": row.message,
                "meta": meta_value,
            }
        )
    return events


__all__ = ["list_recent_events", "record_event"]
