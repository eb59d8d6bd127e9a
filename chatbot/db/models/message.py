"""
Message Model - immutable chat turns and tool-call audit records
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey, Enum as SQLEnum

from chatbot.db.database import Base


class SenderType(str, enum.Enum):
    USER = "user"
    AI = "ai"
    ADMIN = "admin"
    FUNCTION = "function"  # רשומת audit של קריאת כלי - לא מוצגת למשתמש


class Message(Base):
    """Single message within a conversation"""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_type = Column(SQLEnum(SenderType), nullable=False)
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
