"""
Repositories - Conversation Store over async SQLAlchemy
"""
from chatbot.domain.repositories.configuration_repository import ConfigurationRepository
from chatbot.domain.repositories.conversation_repository import ConversationRepository
from chatbot.domain.repositories.message_repository import MessageRepository

__all__ = [
    "ConfigurationRepository",
    "ConversationRepository",
    "MessageRepository",
]
