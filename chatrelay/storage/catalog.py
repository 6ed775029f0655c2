"""Storage helpers for the provider catalogue and the key pool."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, cast

from sqlalchemy import func, select, update

from chatrelay.core.config import ProviderModel
from chatrelay.core.encryption import encrypt_secret
from chatrelay.core.timeutils import isoformat

from .database import session_scope
from .models import ChatSession, KeyStatus, Provider, ProviderKey, SessionStatus


class UnknownProviderError(LookupError):
    def __init__(self, provider_code: str) -> None:
        super().__init__(f"Provider '{provider_code}' not configured")
        self.provider_code = provider_code


def sync_providers(providers: Iterable[ProviderModel]) -> int:
    """Insert or update provider records from configuration. Returns the count written."""
    written = 0
    with session_scope() as session:
        for provider in providers:
            values = provider.model_dump(exclude={"code"})
            existing = session.scalar(select(Provider).where(Provider.code == provider.code))
            if existing:
                session.execute(
                    update(Provider).where(Provider.id == existing.id).values(**values)
                )
            else:
                session.add(Provider(code=provider.code, **values))
            written += 1
    return written


def list_providers() -> list[ProviderModel]:
    with session_scope() as session:
        rows = session.scalars(select(Provider).order_by(Provider.code)).all()
        return [ProviderModel.model_validate(row) for row in rows]


def get_provider(provider_code: str) -> ProviderModel | None:
    with session_scope() as session:
        row = session.scalar(select(Provider).where(Provider.code == provider_code))
        return ProviderModel.model_validate(row) if row else None


def add_key(
    provider_code: str,
    secret: str,
    *,
    model: str | None = None,
    label: str | None = None,
    usage_limit: int | None = None,
) -> int:
    """Store a new active key for a provider and return its id."""
    with session_scope() as session:
        provider_id = session.scalar(select(Provider.id).where(Provider.code == provider_code))
        if provider_id is None:
            raise UnknownProviderError(provider_code)
        key = ProviderKey(
            provider_id=provider_id,
            model=model,
            label=label,
            secret=encrypt_secret(secret),
            usage_count=0,
            usage_limit=usage_limit,
            status=KeyStatus.ACTIVE,
        )
        session.add(key)
        session.flush()
        return cast(int, key.id)


def disable_key(key_id: int) -> bool:
    """Take a key out of rotation for good. Sessions pinned to it stay as they are."""
    with session_scope() as session:
        result = session.execute(
            update(ProviderKey)
            .where(ProviderKey.id == key_id)
            .where(ProviderKey.status != KeyStatus.DISABLED)
            .values(status=KeyStatus.DISABLED, rate_limit_reset_at=None)
        )
        return result.rowcount > 0


def list_keys(provider_code: str | None = None) -> list[dict[str, Any]]:
    """Return key pool state without secrets."""
    with session_scope() as session:
        pinned = (
            select(ChatSession.key_id, func.count(ChatSession.id).label("pending"))
            .where(ChatSession.status == SessionStatus.PENDING_RATE_LIMIT)
            .group_by(ChatSession.key_id)
            .subquery()
        )
        stmt = (
            select(ProviderKey, Provider.code, pinned.c.pending)
            .join(Provider, Provider.id == ProviderKey.provider_id)
            .outerjoin(pinned, pinned.c.key_id == ProviderKey.id)
            .order_by(Provider.code, ProviderKey.id)
        )
        if provider_code:
            stmt = stmt.where(Provider.code == provider_code)
        rows = session.execute(stmt).all()

    return [
        {
            "id": key.id,
            "provider": code,
            "model": key.model,
            "label": key.label,
            "status": key.status,
            "usage_count": key.usage_count,
            "usage_limit": key.usage_limit,
            "last_used_at": isoformat(key.last_used_at),
            "rate_limit_reset_at": isoformat(key.rate_limit_reset_at),
            "pending_sessions": pending or 0,
        }
        for key, code, pending in rows
    ]


__all__ = [
    "UnknownProviderError",
    "add_key",
    "disable_key",
    "get_provider",
    "list_keys",
    "list_providers",
    "sync_providers",
]
