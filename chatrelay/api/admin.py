"""Admin endpoints for the provider catalogue, key pool and recovery sweep."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from chatrelay.dispatch.sweeper import run_recovery_sweep
from chatrelay.storage.catalog import (
    UnknownProviderError,
    add_key,
    disable_key,
    list_keys,
    list_providers,
)
from chatrelay.telemetry.events import list_recent_events, record_event

router = APIRouter(prefix="/admin")


class AddKeyRequest(BaseModel):
    api_key: str = Field(min_length=1)
    model: str | None = None
    label: str | None = None
    usage_limit: int | None = Field(default=None, gt=0)


@router.get("/providers")
def list_provider_catalogue() -> dict:
    keys_by_provider: dict[str, list[dict]] = {}
    for key in list_keys():
        keys_by_provider.setdefault(key["provider"], []).append(key)

    data = []
    for provider in list_providers():
        keys = keys_by_provider.get(provider.code, [])
        data.append(
            {
                "code": provider.code,
                "display_name": provider.display_name,
                "enabled": provider.enabled,
                "adapter": provider.adapter,
                "default_model": provider.default_model,
                "keys": keys,
                "active_keys": sum(1 for key in keys if key["status"] == "active"),
            }
        )
    return {"providers": data}


@router.post("/providers/{provider_code}/keys", status_code=201)
def create_provider_key(provider_code: str, payload: AddKeyRequest) -> dict:
    try:
        key_id = add_key(
            provider_code,
            payload.api_key,
            model=payload.model,
            label=payload.label,
            usage_limit=payload.usage_limit,
        )
    except UnknownProviderError as exc:
        raise HTTPException(status_code=404, detail="Provider not configured") from exc

    record_event(
        "key_added",
        "INFO",
        provider_code=provider_code,
        key_id=key_id,
        message="API key saved via admin",
    )
    return {"id": key_id, "status": "active"}


@router.post("/keys/{key_id}/disable")
def disable_provider_key(key_id: int) -> dict:
    if not disable_key(key_id):
        raise HTTPException(status_code=404, detail="Key not found or already disabled")
    record_event("key_disabled", "WARNING", key_id=key_id, message="API key disabled via admin")
    return {"id": key_id, "status": "disabled"}


@router.post("/rate-limits/sweep")
def sweep_rate_limits() -> dict:
    return asdict(run_recovery_sweep())


@router.get("/events")
def list_events(limit: int = 25, kind: str | None = None) -> dict:
    limit_value = max(1, min(limit, 100))
    return {"events": list_recent_events(limit=limit_value, kind=kind)}
