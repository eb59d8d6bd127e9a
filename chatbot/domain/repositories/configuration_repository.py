"""
Configuration Repository
"""
import json

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatbot.db.models.chatbot_configuration import ChatbotConfiguration
from chatbot.db.models.knowledge_document import KnowledgeDocument
from chatbot.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIGURATION_NAMES = ("Default Configuration", "Default")
KNOWLEDGE_TOKEN_LIMIT = 100_000


class ConfigurationRepository:
    """Read access to chatbot configurations and their knowledge sources"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, config_id: int) -> ChatbotConfiguration | None:
        async with self._session_factory() as session:
            return await session.get(ChatbotConfiguration, config_id)

    async def get_by_name(self, name: str) -> ChatbotConfiguration | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChatbotConfiguration).where(ChatbotConfiguration.name == name)
            )
            return result.scalar_one_or_none()

    async def get_default(self) -> ChatbotConfiguration | None:
        """"Default Configuration", אחר כך "Default", ולבסוף id=1"""
        for name in DEFAULT_CONFIGURATION_NAMES:
            config = await self.get_by_name(name)
            if config is not None:
                return config
        return await self.get(1)

    async def get_by_embed_token(self, token: str) -> ChatbotConfiguration | None:
        """רק קונפיגורציה שה-embed שלה מופעל"""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChatbotConfiguration).where(
                    ChatbotConfiguration.embed_token == token,
                    ChatbotConfiguration.embed_enabled.is_(True),
                )
            )
            return result.scalar_one_or_none()

    async def get_knowledge_from_sources(self, sources_json: str | None) -> str:
        """
        בונה בלוק ידע מתוך מסמכי האתר שנבחרו (רשימת ids ב-JSON).

        מסמכים חסרים מדולגים; מעבר ל-100k טוקנים (הערכה: 4 תווים לטוקן) עוצר.
        """
        if not sources_json:
            return ""
        try:
            document_ids = json.loads(sources_json)
        except (TypeError, ValueError):
            logger.warning("knowledge_sources is not valid JSON", extra_data={
                "sources_json": sources_json[:100],
            })
            return ""
        if not isinstance(document_ids, list) or not document_ids:
            return ""

        parts: list[str] = []
        total_tokens = 0
        async with self._session_factory() as session:
            for raw_id in document_ids:
                try:
                    document = await session.get(KnowledgeDocument, int(raw_id))
                except (TypeError, ValueError):
                    continue
                if document is None:
                    continue
                if total_tokens + document.token_count > KNOWLEDGE_TOKEN_LIMIT:
                    logger.warning(
                        "Knowledge token limit reached, skipping remaining documents",
                        extra_data={"total_tokens": total_tokens, "skipped_document_id": document.id},
                    )
                    break
                parts.append(
                    f"--- {document.type}: {document.title} ---\n"
                    f"URL: {document.url or ''}\n"
                    f"{document.content}\n"
                )
                total_tokens += document.token_count

        if not parts:
            return ""
        return (
            "IMPORTANT: When answering questions using this content, always cite the source URL "
            "so users can learn more.\n\n" + "\n".join(parts)
        )
