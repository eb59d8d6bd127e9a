"""
Conversation Model - one chat thread per (platform, external chat id, configuration)
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Enum as SQLEnum, UniqueConstraint
)

from chatbot.db.database import Base


DEFAULT_VISITOR_NAME = "Visitor"


class PlatformType(str, enum.Enum):
    WEB = "web"
    EMBED = "embed"
    TELEGRAM = "telegram"


class ConversationStatus(str, enum.Enum):
    ACTIVE = "active"
    ENDED = "ended"
    ARCHIVED = "archived"


class Conversation(Base):
    """Chat thread, created lazily on the first inbound message"""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "platform_type", "platform_chat_id", "config_id",
            name="uq_conversation_platform_chat_config",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    visitor_name = Column(String(255), nullable=False, default=DEFAULT_VISITOR_NAME)

    config_id = Column(Integer, ForeignKey("chatbot_configurations.id"), nullable=True, index=True)
    config_name = Column(String(255), nullable=True)

    platform_type = Column(SQLEnum(PlatformType), nullable=False, default=PlatformType.WEB)
    platform_chat_id = Column(String(255), nullable=True, index=True)  # session id / telegram chat id

    status = Column(
        SQLEnum(ConversationStatus), nullable=False, default=ConversationStatus.ACTIVE, index=True
    )

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE
