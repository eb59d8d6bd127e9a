"""
Pipeline envelopes - הקלט (MessageContext) והפלט (MessageResponse) של הצינור.
"""
from dataclasses import dataclass, field, replace
from typing import Any

from chatbot.db.models.chatbot_configuration import ChatbotConfiguration
from chatbot.db.models.conversation import DEFAULT_VISITOR_NAME, PlatformType

RATE_LIMITED = "rate_limited"
VALIDATION_ERROR = "validation_error"
CONVERSATION_ENDED = "conversation_ended"
CONVERSATION_NOT_FOUND = "conversation_not_found"
PIPELINE_ERROR = "pipeline_error"


@dataclass(frozen=True)
class MessageContext:
    message: str
    platform: PlatformType = PlatformType.WEB
    platform_chat_id: str | None = None
    conversation_id: int | None = None
    config_id: int | None = None
    config: ChatbotConfiguration | None = None
    visitor_name: str = DEFAULT_VISITOR_NAME
    client_identifier: str | None = None  # ip_session, מפתח המונים של ה-rate limiter
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_config(self, config: ChatbotConfiguration) -> "MessageContext":
        return replace(self, config=config, config_id=config.id)

    @property
    def rate_limit_identifier(self) -> str:
        if self.client_identifier:
            return self.client_identifier
        if self.platform_chat_id:
            return f"{self.platform.value}:{self.platform_chat_id}"
        return ""


@dataclass(frozen=True)
class MessageResponse:
    success: bool
    content: str | None = None
    error: str | None = None
    error_type: str | None = None
    conversation_id: int | None = None
    message_id: int | None = None
    processing_time_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        content: str,
        conversation_id: int,
        message_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "MessageResponse":
        return cls(
            success=True,
            content=content,
            conversation_id=conversation_id,
            message_id=message_id,
            metadata=metadata or {},
        )

    @classmethod
    def fail(
        cls,
        error: str,
        error_type: str,
        metadata: dict[str, Any] | None = None,
        conversation_id: int | None = None,
    ) -> "MessageResponse":
        return cls(
            success=False,
            error=error,
            error_type=error_type,
            conversation_id=conversation_id,
            metadata=metadata or {},
        )

    def with_processing_time(self, processing_time_ms: float) -> "MessageResponse":
        return replace(self, processing_time_ms=processing_time_ms)

    @property
    def is_rate_limited(self) -> bool:
        return self.error_type == RATE_LIMITED

    @property
    def is_budget_exceeded(self) -> bool:
        return bool(self.metadata.get("budget_exceeded"))

    @property
    def text(self) -> str:
        """מה שמוצג למשתמש: התשובה, או הודעת השגיאה"""
        return (self.content if self.success else self.error) or ""
