"""
Message Pipeline
"""
from chatbot.domain.services.message_pipeline.context import MessageContext, MessageResponse
from chatbot.domain.services.message_pipeline.middleware import (
    MessageMiddleware,
    RateLimitMiddleware,
    ValidationMiddleware,
)
from chatbot.domain.services.message_pipeline.pipeline import MessagePipeline

__all__ = [
    "MessageContext",
    "MessageResponse",
    "MessageMiddleware",
    "MessagePipeline",
    "RateLimitMiddleware",
    "ValidationMiddleware",
]
