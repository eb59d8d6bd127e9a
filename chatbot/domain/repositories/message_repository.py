"""
Message Repository
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatbot.db.models.message import Message, SenderType

# תבניות של הודעות audit של קריאות כלים - מסוננות מכל תמליל שמוצג למשתמש
FUNCTION_CALL_PATTERNS = (
    "🔧 Function Call:",
    "Function Call:",
    "Status: ✅ SUCCESS",
    "Status: ❌ FAILED",
)


def is_function_call_message(message: Message) -> bool:
    if message.sender_type == SenderType.FUNCTION:
        return True
    text = message.message or ""
    return any(pattern in text for pattern in FUNCTION_CALL_PATTERNS)


class MessageRepository:
    """Service for message persistence"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def add(self, conversation_id: int, sender_type: SenderType, body: str) -> Message:
        async with self._session_factory() as session:
            message = Message(
                conversation_id=conversation_id,
                sender_type=sender_type,
                message=body,
            )
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message

    async def list_for_conversation(self, conversation_id: int) -> list[Message]:
        """כל ההודעות בסדר כרונולוגי"""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.timestamp.asc(), Message.id.asc())
            )
            return list(result.scalars().all())

    async def get_recent(self, conversation_id: int, limit: int = 10) -> list[Message]:
        """N ההודעות האחרונות שאינן audit של כלים, בסדר כרונולוגי"""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message)
                .where(
                    Message.conversation_id == conversation_id,
                    Message.sender_type != SenderType.FUNCTION,
                )
                .order_by(Message.timestamp.desc(), Message.id.desc())
                .limit(limit)
            )
            messages = list(result.scalars().all())
        messages.reverse()
        return messages

    async def get_transcript(self, conversation_id: int) -> list[Message]:
        messages = await self.list_for_conversation(conversation_id)
        return [m for m in messages if not is_function_call_message(m)]
