"""
Composition root - כל השירותים נבנים פעם אחת ב-startup ומועברים במפורש.

ה-routes מקבלים את ה-Container דרך Depends(get_container); בבדיקות מחליפים
אותו ב-app.dependency_overrides או בונים Container עם transports מדומים.
"""
from dataclasses import dataclass

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatbot.core.config import settings
from chatbot.db.database import AsyncSessionLocal
from chatbot.domain.repositories import (
    ConfigurationRepository,
    ConversationRepository,
    MessageRepository,
)
from chatbot.domain.services.ai_gateway import AIGatewayClient, GatewayTransport, TokenManager
from chatbot.domain.services.ai_orchestrator import AIOrchestrator
from chatbot.domain.services.data_retention import DataRetentionService
from chatbot.domain.services.message_pipeline import (
    MessagePipeline,
    RateLimitMiddleware,
    ValidationMiddleware,
)
from chatbot.domain.services.prompt_builder import PromptBuilder
from chatbot.domain.services.rate_limiter import RateLimiter
from chatbot.domain.services.telegram_client import TelegramClient
from chatbot.domain.services.tool_gateway import ToolGateway
from chatbot.domain.stores.config_store import ConfigStore


@dataclass
class Container:
    config_store: ConfigStore
    conversations: ConversationRepository
    messages: MessageRepository
    configurations: ConfigurationRepository
    rate_limiter: RateLimiter
    token_manager: TokenManager
    ai_client: AIGatewayClient
    tool_gateway: ToolGateway
    orchestrator: AIOrchestrator
    pipeline: MessagePipeline
    telegram: TelegramClient
    retention: DataRetentionService


def build_container(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    gateway_transport: httpx.AsyncBaseTransport | None = None,
    webhook_transport: httpx.AsyncBaseTransport | None = None,
    telegram_transport: httpx.AsyncBaseTransport | None = None,
) -> Container:
    session_factory = session_factory or AsyncSessionLocal

    config_store = ConfigStore()
    conversations = ConversationRepository(session_factory)
    messages = MessageRepository(session_factory)
    configurations = ConfigurationRepository(session_factory)
    rate_limiter = RateLimiter(config_store)

    transport = GatewayTransport(settings.AI_GATEWAY_BASE_URL, transport=gateway_transport)
    token_manager = TokenManager(config_store, transport)
    ai_client = AIGatewayClient(token_manager, transport)
    tool_gateway = ToolGateway(transport=webhook_transport)

    orchestrator = AIOrchestrator(
        client=ai_client,
        tool_gateway=tool_gateway,
        conversations=conversations,
        messages=messages,
        prompt_builder=PromptBuilder(configurations),
        config_store=config_store,
    )

    pipeline = MessagePipeline(
        orchestrator=orchestrator,
        conversations=conversations,
        messages=messages,
        configurations=configurations,
        rate_limiter=rate_limiter,
    )
    pipeline.add_middleware(ValidationMiddleware())
    pipeline.add_middleware(RateLimitMiddleware(rate_limiter))

    return Container(
        config_store=config_store,
        conversations=conversations,
        messages=messages,
        configurations=configurations,
        rate_limiter=rate_limiter,
        token_manager=token_manager,
        ai_client=ai_client,
        tool_gateway=tool_gateway,
        orchestrator=orchestrator,
        pipeline=pipeline,
        telegram=TelegramClient(transport=telegram_transport),
        retention=DataRetentionService(conversations),
    )


def get_container(request: Request) -> Container:
    """FastAPI dependency"""
    return request.app.state.container
