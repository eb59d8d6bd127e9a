"""
Conversation Repository

כל פעולה פותחת session קצר ומבצעת commit מיד, כך שהודעת המשתמש
נשמרת לפני שמתחילה קריאה ל-AI.
"""
from datetime import datetime

from sqlalchemy import select, delete, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatbot.db.models.conversation import (
    DEFAULT_VISITOR_NAME, Conversation, ConversationStatus, PlatformType
)
from chatbot.db.models.message import Message
from chatbot.core.logging import get_logger

logger = get_logger(__name__)


class ConversationRepository:
    """Service for conversation persistence"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(
        self,
        visitor_name: str,
        config_id: int | None,
        config_name: str | None,
        platform_chat_id: str | None,
        platform_type: PlatformType = PlatformType.WEB,
    ) -> Conversation:
        async with self._session_factory() as session:
            conversation = Conversation(
                visitor_name=visitor_name or DEFAULT_VISITOR_NAME,
                config_id=config_id,
                config_name=config_name,
                platform_type=platform_type,
                platform_chat_id=platform_chat_id,
                status=ConversationStatus.ACTIVE,
            )
            session.add(conversation)
            await session.commit()
            await session.refresh(conversation)

        logger.info(
            "Conversation created",
            extra_data={
                "conversation_id": conversation.id,
                "platform": platform_type.value,
                "config_id": config_id,
            }
        )
        return conversation

    async def get(self, conversation_id: int) -> Conversation | None:
        async with self._session_factory() as session:
            return await session.get(Conversation, conversation_id)

    async def find_by_platform(
        self,
        platform_type: PlatformType,
        platform_chat_id: str,
        config_id: int | None,
    ) -> Conversation | None:
        """השיחה העדכנית ביותר עבור צ'אט חיצוני, בכל סטטוס"""
        query = select(Conversation).where(
            Conversation.platform_type == platform_type,
            Conversation.platform_chat_id == platform_chat_id,
        )
        if config_id is None:
            query = query.where(Conversation.config_id.is_(None))
        else:
            query = query.where(Conversation.config_id == config_id)
        query = query.order_by(Conversation.created_at.desc(), Conversation.id.desc()).limit(1)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def _set_status(self, conversation_id: int, status: ConversationStatus) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(status=status, updated_at=datetime.utcnow())
            )
            await session.commit()
            return result.rowcount > 0

    async def end(self, conversation_id: int) -> bool:
        ended = await self._set_status(conversation_id, ConversationStatus.ENDED)
        if ended:
            logger.info("Conversation ended", extra_data={"conversation_id": conversation_id})
        return ended

    async def reactivate(self, conversation_id: int) -> bool:
        return await self._set_status(conversation_id, ConversationStatus.ACTIVE)

    async def touch(self, conversation_id: int) -> None:
        """עדכון updated_at אחרי כל הודעה חדשה"""
        async with self._session_factory() as session:
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(updated_at=datetime.utcnow())
            )
            await session.commit()

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(Conversation.id)))
            return result.scalar_one()

    async def delete_older_than(self, cutoff: datetime) -> int:
        """מחיקת שיחות (והודעותיהן) שנוצרו לפני cutoff. מחזיר את מספר השיחות שנמחקו."""
        async with self._session_factory() as session:
            ids_result = await session.execute(
                select(Conversation.id).where(Conversation.created_at < cutoff)
            )
            conversation_ids = [row[0] for row in ids_result.all()]
            if not conversation_ids:
                return 0

            await session.execute(
                delete(Message).where(Message.conversation_id.in_(conversation_ids))
            )
            await session.execute(
                delete(Conversation).where(Conversation.id.in_(conversation_ids))
            )
            await session.commit()

        return len(conversation_ids)
