"""
Pipeline middleware

כל middleware מקבל context ואת השלב הבא בשרשרת, ויכול לעצור (להחזיר
MessageResponse) או להמשיך. עדיפות נמוכה רצה קודם.
"""
import re
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from chatbot.core.logging import get_logger
from chatbot.domain.services.message_pipeline.context import (
    RATE_LIMITED,
    VALIDATION_ERROR,
    MessageContext,
    MessageResponse,
)
from chatbot.domain.services.rate_limiter import RateLimiter

logger = get_logger(__name__)

NextHandler = Callable[[MessageContext], Awaitable[MessageResponse]]

_SCRIPT_TAG_RE = re.compile(r"<script\b[^>]*>", re.IGNORECASE)


class MessageMiddleware(ABC):
    """Single link in the pipeline chain"""

    priority: int = 100
    name: str = "middleware"

    @abstractmethod
    async def process(self, context: MessageContext, next_handler: NextHandler) -> MessageResponse:
        """מחזיר תשובה סופית, או את תוצאת next_handler(context)"""


class ValidationMiddleware(MessageMiddleware):
    """Rejects empty messages, messages without a conversation key and script tags"""

    priority = 10
    name = "validation"

    async def process(self, context: MessageContext, next_handler: NextHandler) -> MessageResponse:
        message = (context.message or "").strip()

        if not message:
            return MessageResponse.fail(
                "Please enter a message.",
                VALIDATION_ERROR,
                {"field": "message", "reason": "empty"},
            )

        if context.conversation_id is None and not context.platform_chat_id:
            return MessageResponse.fail(
                "Missing conversation identifier.",
                VALIDATION_ERROR,
                {"field": "platform_chat_id", "reason": "missing"},
            )

        if _SCRIPT_TAG_RE.search(message):
            return MessageResponse.fail(
                "Invalid message content.",
                VALIDATION_ERROR,
                {"field": "message", "reason": "invalid_content"},
            )

        return await next_handler(context)


class RateLimitMiddleware(MessageMiddleware):
    """
    בדיקת מגבלות בלבד. הספירה נעשית ב-core handler אחרי שהתשובה נשמרה,
    כך שהודעה שנדחתה לא נספרת.
    """

    priority = 20
    name = "rate_limit"

    def __init__(self, rate_limiter: RateLimiter) -> None:
        self._limiter = rate_limiter

    async def process(self, context: MessageContext, next_handler: NextHandler) -> MessageResponse:
        decision = await self._limiter.check(context.rate_limit_identifier, context.message)
        if decision.allowed:
            return await next_handler(context)

        metadata = {"reason": decision.reason.value}
        if decision.max_length is not None:
            metadata["max_length"] = decision.max_length
            metadata["actual_length"] = decision.actual_length
        return MessageResponse.fail(decision.message, RATE_LIMITED, metadata)
