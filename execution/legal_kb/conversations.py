"""
Consultant Conversation Store

Persists multi-turn consultant conversations. Each turn appends only the two
newest messages (the user message and the assistant reply); earlier turns are
already stored, so the full history is never rewritten.

Saving a turn yields a tagged result: ``Persisted`` when the conversation is
durable, ``Placeholder`` when storage failed and the caller received a
temporary id instead. Callers branch on ``.durable``.
"""

import time
import uuid
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

from .credits import Principal
from .errors import NotFoundOrForbidden, PersistenceError, ValidationError
from .prompts import FALLBACK_CONVERSATION_TITLE

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "temp-"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if not value:
        return _utcnow()
    # JavaScript clients send ISO strings with a trailing "Z"
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"Invalid message timestamp: {value!r}") from e


@dataclass
class ChatMessage:
    """One message of a consultant conversation."""
    role: str
    content: str
    documents_ids: list[int] = field(default_factory=list)
    tokens_used: int = 0
    timestamp: datetime = field(default_factory=_utcnow)

    def to_model_message(self) -> dict:
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "documents_ids": self.documents_ids,
            "tokens_used": self.tokens_used,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        return cls(
            role=data["role"],
            content=data["content"],
            documents_ids=list(data.get("documents_ids") or []),
            tokens_used=int(data.get("tokens_used") or 0),
            timestamp=_parse_timestamp(data.get("timestamp")),
        )


@dataclass(frozen=True)
class Persisted:
    """The turn was stored; ``conversation_id`` is durable."""
    conversation_id: str
    durable: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Placeholder:
    """Storage failed; ``conversation_id`` is temporary and was never stored."""
    conversation_id: str
    reason: str
    durable: bool = field(default=False, init=False)


SaveOutcome = Union[Persisted, Placeholder]


def is_placeholder_id(conversation_id: Optional[str]) -> bool:
    return bool(conversation_id) and conversation_id.startswith(PLACEHOLDER_PREFIX)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False


class ConversationStore:
    """
    Conversation persistence on top of VectorStore.run_in_transaction().

    Usage:
        store = ConversationStore(vector_store)
        outcome = await store.save_turn(principal, conversation_id, history,
                                        title=title, total_tokens=120,
                                        model_tier="flash")
        if not outcome.durable:
            ...
    """

    def __init__(self, vector_store):
        self.store = vector_store

    async def upsert(
        self,
        principal: Principal,
        conversation_id: Optional[str],
        messages: list[ChatMessage],
        title: Optional[str] = None,
        total_tokens: Optional[int] = None,
        model_tier: Optional[str] = None,
    ) -> str:
        """
        Create or update a conversation and append the last two messages.

        Runs as one transaction. For an existing conversation the token total
        is incremented and the model tier updated, but only when it is owned
        by ``principal``.

        Returns:
            The conversation id

        Raises:
            NotFoundOrForbidden: the conversation is missing or not owned
            PersistenceError: the transaction failed
        """
        if conversation_id and not _is_uuid(conversation_id):
            raise NotFoundOrForbidden(conversation_id)

        new_messages = messages[-2:]

        def _op(cur):
            if conversation_id:
                cur.execute(
                    """
                    UPDATE consultant_conversations
                    SET total_tokens = total_tokens + COALESCE(%s, 0),
                        model_used = COALESCE(%s, model_used),
                        updated_at = NOW()
                    WHERE id = %s AND user_id = %s
                    RETURNING id
                    """,
                    (total_tokens, model_tier, conversation_id, principal.user_id),
                )
                row = cur.fetchone()
                if not row:
                    raise NotFoundOrForbidden(conversation_id)
            else:
                cur.execute(
                    """
                    INSERT INTO consultant_conversations (user_id, title, model_used, total_tokens)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        principal.user_id,
                        title or FALLBACK_CONVERSATION_TITLE.format(
                            date=_utcnow().strftime("%Y-%m-%d")
                        ),
                        model_tier or "flash",
                        total_tokens or 0,
                    ),
                )
                row = cur.fetchone()

            saved_id = str(row["id"] if isinstance(row, dict) else row[0])

            for msg in new_messages:
                cur.execute(
                    """
                    INSERT INTO consultant_messages
                        (conversation_id, role, content, document_ids, tokens_used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        saved_id,
                        msg.role,
                        msg.content,
                        msg.documents_ids or None,
                        msg.tokens_used,
                        msg.timestamp,
                    ),
                )
            return saved_id

        saved_id = await asyncio.to_thread(self.store.run_in_transaction, _op, "upsert_conversation")
        logger.info(
            f"Saved {len(new_messages)} messages to conversation {saved_id} "
            f"for user {principal.user_id}"
        )
        return saved_id

    async def save_turn(
        self,
        principal: Principal,
        conversation_id: Optional[str],
        messages: list[ChatMessage],
        title: Optional[str] = None,
        total_tokens: Optional[int] = None,
        model_tier: Optional[str] = None,
    ) -> SaveOutcome:
        """
        Persist a turn, degrading to a Placeholder when storage fails.

        A placeholder id from an earlier failed save starts a new
        conversation instead of being looked up. Every failure, including a
        conversation that is not owned, yields a fresh ``temp-`` id.
        """
        if is_placeholder_id(conversation_id):
            conversation_id = None
        try:
            saved_id = await self.upsert(
                principal, conversation_id, messages,
                title=title, total_tokens=total_tokens, model_tier=model_tier,
            )
            return Persisted(saved_id)
        except PersistenceError as e:
            logger.error(f"Failed to save conversation: {type(e).__name__}: {e}")
            return Placeholder(f"{PLACEHOLDER_PREFIX}{int(time.time() * 1000)}", reason=str(e))

    async def check_ownership(self, principal: Principal, conversation_id: str) -> None:
        """
        Confirm ``conversation_id`` exists and belongs to ``principal``.

        Raises:
            NotFoundOrForbidden: the conversation is missing or not owned
            PersistenceError: the lookup failed
        """
        if not _is_uuid(conversation_id):
            raise NotFoundOrForbidden(conversation_id)

        def _op(cur):
            cur.execute(
                "SELECT id FROM consultant_conversations WHERE id = %s AND user_id = %s",
                (conversation_id, principal.user_id),
            )
            if not cur.fetchone():
                raise NotFoundOrForbidden(conversation_id)

        await asyncio.to_thread(self.store.run_in_transaction, _op, "check_conversation_owner")

    async def get_messages(self, principal: Principal, conversation_id: str) -> list[ChatMessage]:
        """
        Replay a conversation's messages in submission order.

        Raises:
            NotFoundOrForbidden: the conversation is missing or not owned
        """
        if not _is_uuid(conversation_id):
            raise NotFoundOrForbidden(conversation_id)

        def _op(cur):
            cur.execute(
                "SELECT id FROM consultant_conversations WHERE id = %s AND user_id = %s",
                (conversation_id, principal.user_id),
            )
            if not cur.fetchone():
                raise NotFoundOrForbidden(conversation_id)
            cur.execute(
                """
                SELECT role, content, document_ids, tokens_used, created_at
                FROM consultant_messages
                WHERE conversation_id = %s
                ORDER BY created_at ASC
                """,
                (conversation_id,),
            )
            return cur.fetchall()

        rows = await asyncio.to_thread(self.store.run_in_transaction, _op, "get_messages")

        result = []
        for row in rows:
            if not isinstance(row, dict):
                row = dict(zip(("role", "content", "document_ids", "tokens_used", "created_at"), row))
            result.append(ChatMessage(
                role=row["role"],
                content=row["content"],
                documents_ids=list(row["document_ids"] or []),
                tokens_used=row["tokens_used"] or 0,
                timestamp=_parse_timestamp(row["created_at"]),
            ))
        return result

    async def list_conversations(self, principal: Principal) -> list[dict]:
        """List the principal's conversations, most recently updated first."""
        columns = ("id", "title", "model_used", "total_tokens", "created_at", "updated_at")

        def _op(cur):
            cur.execute(
                """
                SELECT id, title, model_used, total_tokens, created_at, updated_at
                FROM consultant_conversations
                WHERE user_id = %s
                ORDER BY updated_at DESC
                """,
                (principal.user_id,),
            )
            return cur.fetchall()

        rows = await asyncio.to_thread(self.store.run_in_transaction, _op, "list_conversations")

        result = []
        for row in rows:
            if not isinstance(row, dict):
                row = dict(zip(columns, row))
            result.append({
                "id": str(row["id"]),
                "title": row["title"],
                "model_used": row["model_used"],
                "total_tokens": row["total_tokens"],
                "created_at": _parse_timestamp(row["created_at"]).isoformat(),
                "updated_at": _parse_timestamp(row["updated_at"]).isoformat(),
            })
        return result
