"""
LLM gateway: transport, OAuth2 token lifecycle and API client
"""
from chatbot.domain.services.ai_gateway.client import AIGatewayClient
from chatbot.domain.services.ai_gateway.results import (
    CompletionSuccess,
    FailureKind,
    GatewayFailure,
    ModelListSuccess,
    RefreshResult,
    SpeechSuccess,
    TranscriptionSuccess,
    UsageSummarySuccess,
)
from chatbot.domain.services.ai_gateway.token_manager import TokenManager
from chatbot.domain.services.ai_gateway.transport import GatewayTransport

__all__ = [
    "AIGatewayClient",
    "CompletionSuccess",
    "FailureKind",
    "GatewayFailure",
    "GatewayTransport",
    "ModelListSuccess",
    "RefreshResult",
    "SpeechSuccess",
    "TokenManager",
    "TranscriptionSuccess",
    "UsageSummarySuccess",
]
