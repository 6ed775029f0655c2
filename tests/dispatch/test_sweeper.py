import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from chatrelay.dispatch import sweeper
from chatrelay.dispatch.orchestrator import open_session
from chatrelay.storage.catalog import add_key, list_keys
from chatrelay.storage.database import session_scope
from chatrelay.storage.models import ChatSession, KeyStatus, ProviderKey, SessionStatus
from chatrelay.telemetry.events import list_recent_events

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _park(key_id: int, session_ids: list[int], reset_at: datetime) -> None:
    with session_scope() as session:
        session.execute(
            update(ProviderKey)
            .where(ProviderKey.id == key_id)
            .values(status=KeyStatus.RATE_LIMITED, rate_limit_reset_at=reset_at)
        )
        session.execute(
            update(ChatSession)
            .where(ChatSession.id.in_(session_ids))
            .values(status=SessionStatus.PENDING_RATE_LIMIT)
        )


def _session_status(session_id: int) -> str:
    with session_scope() as session:
        return session.get(ChatSession, session_id).status


def test_sweep_recovers_expired_keys_and_their_sessions(seed_provider):
    seed_provider()
    expired = add_key("openai", "sk-expired")
    chat_a = open_session("openai", "a", now=NOW).id
    chat_b = open_session("openai", "b", now=NOW).id
    _park(expired, [chat_a, chat_b], NOW - timedelta(seconds=1))

    result = sweeper.run_recovery_sweep(now=NOW)

    assert result == sweeper.SweepResult(keys_recovered=1, sessions_recovered=2)
    key = list_keys()[0]
    assert key["status"] == KeyStatus.ACTIVE
    assert key["rate_limit_reset_at"] is None
    assert _session_status(chat_a) == SessionStatus.ACTIVE
    assert _session_status(chat_b) == SessionStatus.ACTIVE
    meta = list_recent_events(kind="rate_limit_sweep")[0]["meta"]
    assert meta["key_ids"] == [expired]
    assert sorted(meta["session_ids"]) == [chat_a, chat_b]


def test_sweep_leaves_future_resets_alone(seed_provider):
    seed_provider()
    key_id = add_key("openai", "sk-later")
    chat = open_session("openai", "a", now=NOW).id
    _park(key_id, [chat], NOW + timedelta(minutes=5))

    assert sweeper.run_recovery_sweep(now=NOW) == sweeper.SweepResult(0, 0)
    assert list_keys()[0]["status"] == KeyStatus.RATE_LIMITED
    assert _session_status(chat) == SessionStatus.PENDING_RATE_LIMIT

    assert sweeper.run_recovery_sweep(now=NOW + timedelta(minutes=5)) == sweeper.SweepResult(1, 1)


def test_second_sweep_without_clock_advance_is_a_no_op(seed_provider):
    seed_provider()
    key_id = add_key("openai", "sk")
    chat = open_session("openai", "a", now=NOW).id
    _park(key_id, [chat], NOW - timedelta(minutes=1))

    first = sweeper.run_recovery_sweep(now=NOW)
    second = sweeper.run_recovery_sweep(now=NOW)

    assert first == sweeper.SweepResult(1, 1)
    assert second == sweeper.SweepResult(0, 0)
    assert len(list_recent_events(kind="rate_limit_sweep")) == 1


def test_sweep_releases_sessions_whose_key_was_already_recovered(seed_provider):
    seed_provider()
    key_id = add_key("openai", "sk")
    chat = open_session("openai", "a", now=NOW).id
    with session_scope() as session:
        session.execute(
            update(ChatSession)
            .where(ChatSession.id == chat)
            .values(status=SessionStatus.PENDING_RATE_LIMIT)
        )

    assert sweeper.run_recovery_sweep(now=NOW) == sweeper.SweepResult(0, 1)
    assert _session_status(chat) == SessionStatus.ACTIVE
    assert list_keys()[0]["id"] == key_id


@pytest.mark.asyncio
async def test_recovery_sweeper_runs_periodically(monkeypatch):
    calls: list[int] = []

    def fake_sweep():
        calls.append(1)
        if len(calls) == 2:
            raise RuntimeError("database went away")
        return sweeper.SweepResult(0, 0)

    monkeypatch.setattr(sweeper, "run_recovery_sweep", fake_sweep)

    task_runner = sweeper.RecoverySweeper(interval_seconds=0.01)
    task_runner.start()
    assert task_runner.running
    for _ in range(100):
        if len(calls) >= 3:
            break
        await asyncio.sleep(0.01)
    await task_runner.stop()

    assert len(calls) >= 3
    assert not task_runner.running
