"""Least-used key selection for a provider's key pool."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, aliased

from chatrelay.core.exceptions import NoAvailableKeyError
from chatrelay.storage.database import session_scope
from chatrelay.storage.models import KeyStatus, Provider, ProviderKey

logger = logging.getLogger("chatrelay.selector")


@dataclass(frozen=True)
class KeySelection:
    key_id: int
    provider_id: int
    usage_count: int


def claim_key(session: Session, provider_code: str, model: str | None = None) -> KeySelection:
    """Claim the least-used eligible key inside an open transaction.

    The candidate lookup and the usage increment are one ``UPDATE`` whose
    ``status = 'active'`` guard is re-checked at write time, so a key that
    stopped being active is never handed out. Two concurrent claims may
    still pick the same key; the resulting usage skew is accepted.
    """
    provider = session.execute(
        select(Provider.id, Provider.enabled).where(Provider.code == provider_code)
    ).one_or_none()
    if provider is None:
        raise NoAvailableKeyError(provider_code, message="Provider not configured")
    if not provider.enabled:
        raise NoAvailableKeyError(provider_code, message="Provider is disabled")

    # Aliased so the subquery is not correlated with the UPDATE target.
    pool = aliased(ProviderKey)
    eligible = [
        pool.provider_id == provider.id,
        pool.status == KeyStatus.ACTIVE,
        or_(pool.usage_limit.is_(None), pool.usage_count < pool.usage_limit),
    ]
    if model:
        eligible.append(or_(pool.model.is_(None), pool.model == model))

    candidate = (
        select(pool.id)
        .where(*eligible)
        .order_by(
            pool.usage_count.asc(),
            pool.last_used_at.asc().nulls_first(),
            pool.id.asc(),
        )
        .limit(1)
        .scalar_subquery()
    )
    claimed = session.execute(
        update(ProviderKey)
        .where(ProviderKey.id == candidate)
        .where(ProviderKey.status == KeyStatus.ACTIVE)
        .values(usage_count=ProviderKey.usage_count + 1)
        .returning(ProviderKey.id, ProviderKey.usage_count)
        .execution_options(synchronize_session=False)
    ).one_or_none()

    if claimed is None:
        logger.warning(
            "No available key",
            extra={"event": "no_available_key", "provider": provider_code, "model": model},
        )
        raise NoAvailableKeyError(provider_code)

    return KeySelection(key_id=claimed.id, provider_id=provider.id, usage_count=claimed.usage_count)


def select_key_for_provider(provider_code: str, model: str | None = None) -> KeySelection:
    """Claim a key in its own transaction."""
    with session_scope() as session:
        selection = claim_key(session, provider_code, model)

    logger.info(
        "Key selected",
        extra={
            "event": "key_selected",
            "provider": provider_code,
            "key_id": selection.key_id,
            "usage_count": selection.usage_count,
        },
    )
    return selection


__all__ = ["KeySelection", "claim_key", "select_key_for_provider"]
