"""Chat session lifecycle and the per-message dispatch state machine.

A session is pinned to one key when it is opened. Each ``send_message``
call runs three short transactions around the provider call:

1. load the session with its pinned key, and recover an expired rate
   limit (or short-circuit while the limit is still in force);
2. append the user message and read the ordered transcript;
3. record the assistant reply, or park key and session on a rate limit.

No transaction is held open while the provider is being called.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from chatrelay.core.config import ProviderModel, load_config
from chatrelay.core.encryption import decrypt_secret
from chatrelay.core.exceptions import (
    DispatchError,
    ProviderAuthInvalidError,
    RateLimitedError,
    ServiceUnavailableError,
    SessionNotFoundError,
)
from chatrelay.core.timeutils import ensure_utc, isoformat, utcnow
from chatrelay.logging import bind_chat_session, reset_chat_session
from chatrelay.providers.base import ChatMessage
from chatrelay.providers.registry import registry
from chatrelay.storage.database import session_scope
from chatrelay.storage.models import (
    ChatSession,
    KeyStatus,
    Message,
    MessageRole,
    Provider,
    ProviderKey,
    SessionStatus,
)
from chatrelay.telemetry.events import record_event

from .selector import claim_key

logger = logging.getLogger("chatrelay.orchestrator")


@dataclass(frozen=True)
class MessageView:
    id: int
    role: str
    content: str
    token_count: int | None
    created_at: datetime | None

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = isoformat(self.created_at)
        return data


@dataclass(frozen=True)
class SendResult:
    assistant_message: MessageView
    session_status: str


@dataclass(frozen=True)
class SessionView:
    id: int
    owner_id: str
    title: str
    provider_code: str
    model: str | None
    status: str
    key_id: int
    rate_limit_reset_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None
    messages: list[MessageView] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "provider": self.provider_code,
            "model": self.model,
            "status": self.status,
            "rate_limit_reset_at": isoformat(self.rate_limit_reset_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "messages": [message.as_dict() for message in self.messages],
        }


@dataclass
class _PinnedState:
    session_id: int
    session_status: str
    key_id: int
    key_status: str
    reset_at: datetime | None
    secret: str
    model: str | None
    provider: ProviderModel


def _message_view(row: Message) -> MessageView:
    return MessageView(
        id=row.id,
        role=row.role,
        content=row.content,
        token_count=row.token_count,
        created_at=ensure_utc(row.created_at),
    )


def _transcript(session: Session, session_id: int) -> list[Message]:
    return list(
        session.scalars(
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        ).all()
    )


def open_session(
    provider_code: str,
    owner_id: str,
    *,
    title: str | None = None,
    model: str | None = None,
    now: datetime | None = None,
) -> SessionView:
    """Create a chat session pinned to the least-used eligible key."""
    current = now or utcnow()
    with session_scope() as session:
        selection = claim_key(session, provider_code, model)
        default_model = session.scalar(
            select(Provider.default_model).where(Provider.id == selection.provider_id)
        )
        chat = ChatSession(
            owner_id=owner_id,
            title=title or "New Chat",
            provider_id=selection.provider_id,
            key_id=selection.key_id,
            model=model or default_model,
            status=SessionStatus.ACTIVE,
            created_at=current,
            updated_at=current,
        )
        session.add(chat)
        session.flush()
        view = SessionView(
            id=chat.id,
            owner_id=chat.owner_id,
            title=chat.title,
            provider_code=provider_code,
            model=chat.model,
            status=chat.status,
            key_id=chat.key_id,
            rate_limit_reset_at=None,
            created_at=current,
            updated_at=current,
        )

    logger.info(
        "Chat session opened",
        extra={
            "event": "session_opened",
            "provider": provider_code,
            "key_id": selection.key_id,
            "session_id": view.id,
            "usage_count": selection.usage_count,
        },
    )
    record_event(
        "key_selected",
        "INFO",
        provider_code=provider_code,
        key_id=selection.key_id,
        session_id=view.id,
        meta={"usage_count": selection.usage_count},
    )
    return view


def get_session(session_id: int) -> SessionView:
    """Return a session with its ordered transcript."""
    with session_scope() as session:
        row = session.execute(
            select(ChatSession, Provider.code, ProviderKey.rate_limit_reset_at)
            .join(Provider, Provider.id == ChatSession.provider_id)
            .join(ProviderKey, ProviderKey.id == ChatSession.key_id)
            .where(ChatSession.id == session_id)
        ).one_or_none()
        if row is None:
            raise SessionNotFoundError(session_id)
        chat, provider_code, reset_at = row
        messages = [_message_view(message) for message in _transcript(session, session_id)]

    return SessionView(
        id=chat.id,
        owner_id=chat.owner_id,
        title=chat.title,
        provider_code=provider_code,
        model=chat.model,
        status=chat.status,
        key_id=chat.key_id,
        rate_limit_reset_at=ensure_utc(reset_at),
        created_at=ensure_utc(chat.created_at),
        updated_at=ensure_utc(chat.updated_at),
        messages=messages,
    )


def _load_pinned_state(session_id: int) -> _PinnedState:
    with session_scope() as session:
        row = session.execute(
            select(ChatSession, ProviderKey, Provider)
            .join(ProviderKey, ProviderKey.id == ChatSession.key_id)
            .join(Provider, Provider.id == ChatSession.provider_id)
            .where(ChatSession.id == session_id)
        ).one_or_none()
        if row is None:
            raise SessionNotFoundError(session_id)
        chat, key, provider = row
        return _PinnedState(
            session_id=chat.id,
            session_status=chat.status,
            key_id=key.id,
            key_status=key.status,
            reset_at=ensure_utc(key.rate_limit_reset_at),
            secret=key.secret,
            model=chat.model,
            provider=ProviderModel.model_validate(provider),
        )


def _still_limited(state: _PinnedState, reset_at: datetime) -> RateLimitedError:
    return RateLimitedError(
        reset_at,
        "This chat is currently rate limited. Please try again later.",
        provider_id=state.provider.code,
    )


def _recover_if_expired(state: _PinnedState, now: datetime) -> None:
    """Lift an expired rate limit, or raise while it is still in force.

    Both updates are guarded on the old status so concurrent callers and the
    sweeper performing the same transition cannot conflict. The session is
    only released while its key is active, and the key is re-read in the same
    transaction to catch a limit applied after ``state`` was loaded.
    """
    parked = state.session_status == SessionStatus.PENDING_RATE_LIMIT
    key_limited = state.key_status == KeyStatus.RATE_LIMITED
    if not parked and not key_limited:
        return

    if key_limited and state.reset_at is not None and state.reset_at > now:
        raise _still_limited(state, state.reset_at)

    active_keys = select(ProviderKey.id).where(ProviderKey.status == KeyStatus.ACTIVE)
    with session_scope() as session:
        key_result = session.execute(
            update(ProviderKey)
            .where(ProviderKey.id == state.key_id)
            .where(ProviderKey.status == KeyStatus.RATE_LIMITED)
            .where(ProviderKey.rate_limit_reset_at <= now)
            .values(status=KeyStatus.ACTIVE, rate_limit_reset_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session_result = session.execute(
            update(ChatSession)
            .where(ChatSession.id == state.session_id)
            .where(ChatSession.status == SessionStatus.PENDING_RATE_LIMIT)
            .where(ChatSession.key_id.in_(active_keys))
            .values(status=SessionStatus.ACTIVE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        key_status, reset_at = session.execute(
            select(ProviderKey.status, ProviderKey.rate_limit_reset_at).where(
                ProviderKey.id == state.key_id
            )
        ).one()

    if key_result.rowcount:
        logger.info(
            "Rate limit lifted on demand",
            extra={"event": "key_recovered", "key_id": state.key_id, "source": "lazy_check"},
        )
        record_event(
            "key_recovered",
            "INFO",
            provider_code=state.provider.code,
            key_id=state.key_id,
            session_id=state.session_id,
            meta={"source": "lazy_check", "sessions": session_result.rowcount},
        )

    if key_status == KeyStatus.RATE_LIMITED:
        raise _still_limited(state, ensure_utc(reset_at))
    if key_status == KeyStatus.DISABLED:
        raise ServiceUnavailableError(
            "The API key pinned to this chat is disabled", provider_id=state.provider.code
        )


def _append_user_message(state: _PinnedState, text: str, now: datetime) -> list[ChatMessage]:
    with session_scope() as session:
        session.add(
            Message(
                session_id=state.session_id,
                role=MessageRole.USER,
                content=text,
                created_at=now,
            )
        )
        session.flush()
        return [
            ChatMessage(role=message.role, content=message.content)
            for message in _transcript(session, state.session_id)
        ]


def _record_reply(state: _PinnedState, text: str, token_count: int, now: datetime) -> MessageView:
    with session_scope() as session:
        reply = Message(
            session_id=state.session_id,
            role=MessageRole.ASSISTANT,
            content=text,
            token_count=token_count,
            created_at=now,
        )
        session.add(reply)
        session.execute(
            update(ProviderKey).where(ProviderKey.id == state.key_id).values(last_used_at=now)
        )
        session.execute(
            update(ChatSession).where(ChatSession.id == state.session_id).values(updated_at=now)
        )
        session.flush()
        return _message_view(reply)


def _park(state: _PinnedState, reset_at: datetime, now: datetime) -> None:
    """Mark the pinned key rate limited and park the session until ``reset_at``."""
    with session_scope() as session:
        key_result = session.execute(
            update(ProviderKey)
            .where(ProviderKey.id == state.key_id)
            .where(ProviderKey.status.in_([KeyStatus.ACTIVE, KeyStatus.RATE_LIMITED]))
            .values(status=KeyStatus.RATE_LIMITED, rate_limit_reset_at=reset_at, updated_at=now)
        )
        # A key disabled meanwhile stays disabled; the session is left alone.
        if key_result.rowcount:
            session.execute(
                update(ChatSession)
                .where(ChatSession.id == state.session_id)
                .where(ChatSession.status == SessionStatus.ACTIVE)
                .values(status=SessionStatus.PENDING_RATE_LIMIT, updated_at=now)
            )

    logger.warning(
        "Key rate limited; session parked",
        extra={
            "event": "key_rate_limited",
            "provider": state.provider.code,
            "key_id": state.key_id,
            "reset_at": reset_at.isoformat(),
        },
    )
    record_event(
        "key_rate_limited",
        "WARNING",
        provider_code=state.provider.code,
        key_id=state.key_id,
        session_id=state.session_id,
        message="API rate limit exceeded",
        meta={"reset_at": reset_at.isoformat()},
    )


async def send_message(session_id: int, text: str, *, now: datetime | None = None) -> SendResult:
    """Run one user/assistant exchange on a session's pinned key.

    Raises ``RateLimitedError``, ``ProviderAuthInvalidError``,
    ``ProviderError``, ``ServiceUnavailableError`` or
    ``MalformedResponseError``. Only a rate limit changes key or session
    state; on every failure the user message stays recorded.
    """
    token = bind_chat_session(session_id)
    try:
        current = now or utcnow()
        state = _load_pinned_state(session_id)

        if state.key_status == KeyStatus.DISABLED:
            raise ServiceUnavailableError(
                "The API key pinned to this chat is disabled", provider_id=state.provider.code
            )
        _recover_if_expired(state, current)

        secret = decrypt_secret(state.secret)
        if not secret:
            raise ProviderAuthInvalidError(
                "Stored API key could not be decrypted", provider_id=state.provider.code
            )

        history = _append_user_message(state, text, current)

        settings = load_config().dispatch
        adapter = registry.resolve(state.provider, settings)
        try:
            completion = await adapter.send(secret, history, state.model, now=current)
        except RateLimitedError as exc:
            _park(state, exc.reset_at, now or utcnow())
            raise
        except DispatchError as exc:
            logger.warning(
                "Provider exchange failed",
                extra={
                    "event": "provider_error",
                    "provider": state.provider.code,
                    "key_id": state.key_id,
                    "error_kind": exc.kind,
                    "error_message": exc.message,
                },
            )
            record_event(
                "provider_error",
                "WARNING",
                provider_code=state.provider.code,
                key_id=state.key_id,
                session_id=session_id,
                message=exc.message,
                meta={"kind": exc.kind},
            )
            raise

        reply = _record_reply(state, completion.text, completion.token_count, now or utcnow())
        return SendResult(assistant_message=reply, session_status=SessionStatus.ACTIVE)
    finally:
        reset_chat_session(token)


__all__ = [
    "MessageView",
    "SendResult",
    "SessionView",
    "get_session",
    "open_session",
    "send_message",
]
