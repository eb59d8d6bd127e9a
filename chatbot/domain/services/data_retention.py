"""
Data retention - מחיקת שיחות ישנות (והודעותיהן) אחרי DATA_RETENTION_DAYS.
"""
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from chatbot.core.config import settings
from chatbot.core.logging import get_logger, log_async_operation
from chatbot.domain.repositories.conversation_repository import ConversationRepository

logger = get_logger(__name__)


class DataRetentionService:
    """Deletes conversations created before the retention cutoff"""

    def __init__(
        self,
        conversations: ConversationRepository,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._conversations = conversations
        self._clock = clock

    def cutoff(self, days: int | None = None) -> datetime:
        days = max(1, days if days is not None else settings.DATA_RETENTION_DAYS)
        return self._clock() - timedelta(days=days)

    @log_async_operation("data_retention_cleanup")
    async def cleanup(self, days: int | None = None) -> dict[str, int]:
        if not settings.DATA_RETENTION_ENABLED:
            logger.info("Data retention disabled, skipping cleanup")
            return {"deleted": 0, "errors": 0}

        cutoff = self.cutoff(days)
        try:
            deleted = await self._conversations.delete_older_than(cutoff)
        except SQLAlchemyError as e:
            logger.error(
                "Data retention cleanup failed",
                extra_data={"cutoff": cutoff.isoformat(), "error": str(e)},
                exc_info=True,
            )
            return {"deleted": 0, "errors": 1}

        logger.info(
            "Old conversations deleted",
            extra_data={"deleted": deleted, "cutoff": cutoff.isoformat()},
        )
        return {"deleted": deleted, "errors": 0}
