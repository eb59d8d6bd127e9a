"""
Message Pipeline - נקודת הכניסה של כל הודעה נכנסת.

סדר תופעות הלוואי קבוע:
בדיקת rate limit (בלי שינוי) -> איתור/יצירת שיחה -> שמירת הודעת המשתמש ->
קריאה ל-AI -> שמירת התשובה -> ספירת מונים.
שיחה נוצרת רק כשמגיעה הודעה ראשונה, כך שאין שיחות ריקות.
"""
import time

from sqlalchemy.exc import IntegrityError

from chatbot.core.logging import get_logger
from chatbot.db.models.conversation import Conversation
from chatbot.db.models.message import SenderType
from chatbot.domain.repositories.configuration_repository import ConfigurationRepository
from chatbot.domain.repositories.conversation_repository import ConversationRepository
from chatbot.domain.repositories.message_repository import MessageRepository
from chatbot.domain.services.ai_orchestrator import AIOrchestrator, BUDGET_EXCEEDED_RESPONSE
from chatbot.domain.services.message_pipeline.context import (
    CONVERSATION_ENDED,
    CONVERSATION_NOT_FOUND,
    PIPELINE_ERROR,
    MessageContext,
    MessageResponse,
)
from chatbot.domain.services.message_pipeline.middleware import MessageMiddleware, NextHandler
from chatbot.domain.services.rate_limiter import RateLimiter

logger = get_logger(__name__)

CONVERSATION_ENDED_MESSAGE = "This conversation has ended. Please start a new conversation."
FALLBACK_REPLY = "I'm sorry, I couldn't process your request. Please try again."
PIPELINE_ERROR_MESSAGE = "An error occurred while processing your message."


class _ConversationUnavailable(Exception):
    def __init__(self, response: MessageResponse):
        super().__init__(response.error)
        self.response = response


class MessagePipeline:
    """Middleware chain around the core handler"""

    def __init__(
        self,
        orchestrator: AIOrchestrator,
        conversations: ConversationRepository,
        messages: MessageRepository,
        configurations: ConfigurationRepository,
        rate_limiter: RateLimiter,
    ) -> None:
        self._orchestrator = orchestrator
        self._conversations = conversations
        self._messages = messages
        self._configurations = configurations
        self._rate_limiter = rate_limiter
        self._middleware: list[MessageMiddleware] = []

    def add_middleware(self, middleware: MessageMiddleware) -> "MessagePipeline":
        self._middleware.append(middleware)
        self._middleware.sort(key=lambda m: m.priority)
        return self

    @property
    def middleware(self) -> list[MessageMiddleware]:
        return list(self._middleware)

    def _build_chain(self) -> NextHandler:
        chain: NextHandler = self._core_handler
        for middleware in reversed(self._middleware):
            chain = self._wrap(middleware, chain)
        return chain

    @staticmethod
    def _wrap(middleware: MessageMiddleware, next_handler: NextHandler) -> NextHandler:
        async def handler(context: MessageContext) -> MessageResponse:
            return await middleware.process(context, next_handler)
        return handler

    async def process(self, context: MessageContext) -> MessageResponse:
        """
        Raises:
            כל חריגה שקרתה לפני שהודעת המשתמש נשמרה (למשל כשל DB) עוברת הלאה.
        """
        start = time.perf_counter()
        logger.info(
            "Processing message",
            extra_data={
                "platform": context.platform.value,
                "message_length": len(context.message or ""),
                "conversation_id": context.conversation_id,
            },
        )

        context = await self._ensure_configuration(context)
        response = await self._build_chain()(context)

        processing_time = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "Message processed",
            extra_data={
                "success": response.success,
                "error_type": response.error_type,
                "conversation_id": response.conversation_id,
                "processing_time_ms": processing_time,
            },
        )
        return response.with_processing_time(processing_time)

    async def _ensure_configuration(self, context: MessageContext) -> MessageContext:
        if context.config is not None:
            return context
        config = None
        if context.config_id is not None:
            config = await self._configurations.get(context.config_id)
        if config is None:
            config = await self._configurations.get_default()
        return context.with_config(config) if config is not None else context

    async def _resolve_conversation(self, context: MessageContext) -> Conversation:
        if context.conversation_id is not None:
            conversation = await self._conversations.get(context.conversation_id)
            if conversation is None:
                raise _ConversationUnavailable(
                    MessageResponse.fail("Conversation not found", CONVERSATION_NOT_FOUND)
                )
        else:
            conversation = await self._conversations.find_by_platform(
                context.platform, context.platform_chat_id, context.config_id
            )
            if conversation is None:
                conversation = await self._create_conversation(context)

        if not conversation.is_active:
            raise _ConversationUnavailable(
                MessageResponse.fail(
                    CONVERSATION_ENDED_MESSAGE,
                    CONVERSATION_ENDED,
                    {"status": conversation.status.value},
                    conversation_id=conversation.id,
                )
            )
        return conversation

    async def _create_conversation(self, context: MessageContext) -> Conversation:
        try:
            return await self._conversations.create(
                visitor_name=context.visitor_name,
                config_id=context.config_id,
                config_name=context.config.name if context.config else None,
                platform_chat_id=context.platform_chat_id,
                platform_type=context.platform,
            )
        except IntegrityError:
            # בקשה מקבילה יצרה את השיחה ראשונה
            conversation = await self._conversations.find_by_platform(
                context.platform, context.platform_chat_id, context.config_id
            )
            if conversation is None:
                raise
            return conversation

    async def _core_handler(self, context: MessageContext) -> MessageResponse:
        try:
            conversation = await self._resolve_conversation(context)
        except _ConversationUnavailable as unavailable:
            return unavailable.response

        conversation_id = conversation.id
        await self._messages.add(conversation_id, SenderType.USER, context.message)

        # מכאן הודעת המשתמש שמורה; כשל הופך לתשובת pipeline_error
        try:
            await self._conversations.touch(conversation_id)
            reply = await self._orchestrator.generate_response(
                conversation_id, context.message, context.config
            )
            reply = reply or FALLBACK_REPLY
            ai_message = await self._messages.add(conversation_id, SenderType.AI, reply)
            await self._rate_limiter.increment_counters(context.rate_limit_identifier)
        except Exception as e:
            logger.error(
                f"Pipeline error: {e}",
                extra_data={"conversation_id": conversation_id},
                exc_info=True,
            )
            return MessageResponse.fail(
                PIPELINE_ERROR_MESSAGE,
                PIPELINE_ERROR,
                {"exception": type(e).__name__},
                conversation_id=conversation_id,
            )

        return MessageResponse.ok(
            reply,
            conversation_id,
            ai_message.id,
            {"budget_exceeded": reply == BUDGET_EXCEEDED_RESPONSE},
        )
