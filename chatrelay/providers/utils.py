"""Helper utilities for provider adapters."""

from __future__ import annotations

from typing import Any

import httpx

MAX_ERROR_DETAIL_LENGTH = 300


def extract_error_body(response: httpx.Response) -> Any:
    """Return structured error details if available, else a trimmed text body."""

    try:
        return response.json()
    except ValueError:
        text = getattr(response, "text", None)
        if text:
            stripped = text.strip()
            if stripped:
                return stripped
        return None


def summarize_error(body: Any) -> str | None:
    """Return a compact, length-capped provider error message, if one can be found."""

    detail: str | None = None
    if isinstance(body, dict):
        error_obj = body.get("error")
        if isinstance(error_obj, dict):
            status = error_obj.get("status") or error_obj.get("type")
            message = error_obj.get("message")
            parts = [
                part.strip()
                for part in (status, message)
                if isinstance(part, str) and part.strip()
            ]
            if parts:
                detail = " - ".join(parts)
            elif error_obj:
                detail = str(error_obj)
        elif isinstance(error_obj, str):
            detail = error_obj
        elif isinstance(body.get("message"), str):
            detail = body["message"]
        elif body:
            detail = str(body)
    elif body:
        detail = str(body)

    if detail:
        compact = " ".join(detail.split())
        if len(compact) > MAX_ERROR_DETAIL_LENGTH:
            compact = f"{compact[: MAX_ERROR_DETAIL_LENGTH - 3]}..."
        return compact or None
    return None


def merge_consecutive_turns(turns: list[tuple[str, str]]) -> list[tuple[str, str]]:
    """Join adjacent turns that share a role.

    A failed exchange leaves two user turns back to back; providers that
    require alternating roles receive them as one turn.
    """

    merged: list[tuple[str, str]] = []
    for role, text in turns:
        if merged and merged[-1][0] == role:
            merged[-1] = (role, f"{merged[-1][1]}\n\n{text}")
        else:
            merged.append((role, text))
    return merged


__all__ = ["extract_error_body", "merge_consecutive_turns", "summarize_error"]
