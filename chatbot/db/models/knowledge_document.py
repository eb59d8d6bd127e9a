"""
Knowledge Document Model - site content referenced by a configuration's knowledge_sources
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime

from chatbot.db.database import Base


class KnowledgeDocument(Base):
    """A page/post of site content that can be injected into the system prompt"""

    __tablename__ = "knowledge_documents"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(50), nullable=False, default="page")  # page, post, product...
    title = Column(String(500), nullable=False)
    url = Column(String(1000), nullable=True)
    content = Column(Text, nullable=False, default="")

    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def token_count(self) -> int:
        """הערכה גסה: טוקן אחד ≈ 4 תווים"""
        return -(-len(self.content or "") // 4)
