"""
Chatbot Configuration Model
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean

from chatbot.db.database import Base


class ChatbotConfiguration(Base):
    """Persona, knowledge, tool settings and platform credentials of one chatbot"""

    __tablename__ = "chatbot_configurations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, unique=True)

    # Prompt material
    persona = Column(Text, nullable=True)
    knowledge = Column(Text, nullable=True)
    knowledge_sources = Column(Text, nullable=True)  # JSON list of KnowledgeDocument ids
    system_prompt = Column(Text, nullable=True)
    greeting = Column(Text, nullable=True)  # may contain %s for the visitor name

    # n8n / tool webhook settings (JSON text, parsed by ToolSettings.parse)
    n8n_settings = Column(Text, nullable=True)

    # Telegram
    telegram_bot_token = Column(String(255), nullable=True)
    telegram_webhook_secret = Column(String(255), nullable=True)

    # Embed widget
    embed_token = Column(String(64), nullable=True, unique=True, index=True)
    embed_enabled = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
