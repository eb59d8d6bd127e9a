"""
Database Models
"""
from chatbot.db.models.chatbot_configuration import ChatbotConfiguration
from chatbot.db.models.conversation import Conversation, ConversationStatus, PlatformType
from chatbot.db.models.knowledge_document import KnowledgeDocument
from chatbot.db.models.message import Message, SenderType

__all__ = [
    "ChatbotConfiguration",
    "Conversation",
    "ConversationStatus",
    "PlatformType",
    "KnowledgeDocument",
    "Message",
    "SenderType",
]
