"""
Celery Tasks

Periodic maintenance jobs. כל task מריץ קוד async ב-event loop משלו.
"""
import asyncio
from contextlib import contextmanager

from chatbot.workers.celery_app import celery_app
from chatbot.db.database import get_task_session
from chatbot.domain.repositories.conversation_repository import ConversationRepository
from chatbot.domain.services.data_retention import DataRetentionService
from chatbot.core.logging import get_logger, set_correlation_id
from chatbot.core.redis_client import close_redis

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop - client שמחובר ל-loop סגור לא שמיש
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="chatbot.workers.tasks.cleanup_old_conversations")
def cleanup_old_conversations(days: int | None = None):
    """מחיקת שיחות שנוצרו לפני now - DATA_RETENTION_DAYS. מחזיר {deleted, errors}."""

    async def _cleanup():
        async with get_task_session() as session_factory:
            service = DataRetentionService(ConversationRepository(session_factory))
            return await service.cleanup(days)

    return run_async(_cleanup())
