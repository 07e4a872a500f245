"""
SQL-backed conversation store.
"""

from datetime import timezone

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..llm.base import Turn
from ..models import Conversation, Message, init_database
from .base import ConversationStore, part_from_dict, part_to_dict

logger = structlog.get_logger()

TITLE_LENGTH = 80


def conversation_title(turn: Turn) -> str | None:
    """Title for a new conversation, taken from its opening user turn."""
    text = " ".join(turn.text.split()) if turn.role == "user" else ""
    if not text:
        return None
    return text if len(text) <= TITLE_LENGTH else text[: TITLE_LENGTH - 3].rstrip() + "..."


class SQLConversationStore(ConversationStore):
    """Stores turns as ``messages`` rows under a ``conversations`` row."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def append(self, conversation_id: str, turn: Turn) -> None:
        async with self.session_factory() as db:
            conversation = await db.get(Conversation, conversation_id)
            if conversation is None:
                conversation = Conversation(id=conversation_id, title=conversation_title(turn))
                db.add(conversation)
                await db.flush()
                logger.info("Created conversation", conversation_id=conversation_id)

            result = await db.execute(
                select(func.count(Message.id)).where(Message.conversation_id == conversation_id)
            )
            position = result.scalar_one()

            content = turn.content
            if not isinstance(content, str):
                content = [part_to_dict(p) for p in content]

            db.add(Message(
                conversation_id=conversation_id,
                position=position,
                role=turn.role,
                content=content,
                extra_data=dict(turn.metadata),
                created_at=turn.timestamp,
            ))
            await db.commit()

    async def list_turns(self, conversation_id: str) -> list[Turn]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.position)
            )
            messages = result.scalars().all()

        turns = []
        for message in messages:
            content = message.content
            if not isinstance(content, str):
                content = tuple(part_from_dict(p) for p in content or [])
            timestamp = message.created_at
            # SQLite drops tzinfo
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            turns.append(Turn(
                role=message.role,  # type: ignore[arg-type]
                content=content,
                timestamp=timestamp,
                metadata=dict(message.extra_data or {}),
            ))
        return turns


async def create_store(database_url: str) -> SQLConversationStore:
    """Create tables if needed and return a store bound to the database."""
    session_factory = await init_database(database_url)
    return SQLConversationStore(session_factory)
