"""
Embed widget API - /embed/{token}/...

שכבת transport דקה מעל ה-Message Pipeline. זהות הסשן מגיעה בכותרת
X-Session-ID או בפרמטר session_id, וממופה לשיחה אחת שנוצרת בהודעה הראשונה.
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field

from chatbot.api.dependencies.embed_auth import get_embed_configuration
from chatbot.api.errors import raise_for_gateway_failure, raise_for_pipeline_failure
from chatbot.container import Container, get_container
from chatbot.core.config import settings
from chatbot.core.exceptions import ConversationNotFoundError, ValidationException
from chatbot.core.logging import get_logger
from chatbot.db.models.chatbot_configuration import ChatbotConfiguration
from chatbot.db.models.conversation import DEFAULT_VISITOR_NAME, PlatformType
from chatbot.domain.services.ai_gateway.results import GatewayFailure
from chatbot.domain.services.message_pipeline import MessageContext
from chatbot.domain.services.rate_limiter import build_identifier, get_client_ip

logger = get_logger(__name__)

router = APIRouter()

DEFAULT_GREETING = "Hello! How can I help you today?"
DEFAULT_INIT_GREETING = "Hello %s! How can I help you today?"


class InitRequest(BaseModel):
    visitor_name: str = Field(default=DEFAULT_VISITOR_NAME, max_length=100)


class SessionRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=100)


class EmbedMessageRequest(SessionRequest):
    message: str = ""
    visitor_name: str = Field(default=DEFAULT_VISITOR_NAME, max_length=100)


class SpeechRequest(BaseModel):
    text: str
    voice: str = "alloy"
    model: str = "tts-1"
    speed: float = Field(default=1.0, ge=0.25, le=4.0)


class TranscribeRequest(BaseModel):
    audio: str  # base64
    model: str = "whisper-1"
    language: str = ""


def _format_greeting(template: str | None, visitor_name: str) -> str:
    template = template or DEFAULT_INIT_GREETING
    if "%s" in template:
        return template.replace("%s", visitor_name, 1)
    return template


def _resolve_session_id(header_value: str | None, body_value: str | None) -> str:
    session_id = (header_value or body_value or "").strip()
    if not session_id:
        raise ValidationException("Session ID required", field="session_id")
    return session_id


async def _find_session_conversation(container: Container, session_id: str, config_id: int):
    return await container.conversations.find_by_platform(PlatformType.EMBED, session_id, config_id)


@router.get("/{token}/config")
async def get_embed_config(
    config: ChatbotConfiguration = Depends(get_embed_configuration),
) -> dict:
    return {
        "success": True,
        "chatbot_name": config.name,
        "greeting": config.greeting or DEFAULT_GREETING,
        "primary_color": settings.EMBED_PRIMARY_COLOR,
    }


@router.post("/{token}/init")
async def init_session(
    data: InitRequest,
    config: ChatbotConfiguration = Depends(get_embed_configuration),
) -> dict:
    """מזהה סשן חדש. השיחה עצמה נוצרת רק עם ההודעה הראשונה."""
    visitor_name = data.visitor_name.strip() or DEFAULT_VISITOR_NAME
    return {
        "success": True,
        "session_id": str(uuid.uuid4()),
        "chatbot_name": config.name,
        "greeting": _format_greeting(config.greeting, visitor_name),
    }


@router.post("/{token}/message")
async def send_message(
    data: EmbedMessageRequest,
    request: Request,
    x_session_id: str | None = Header(None),
    config: ChatbotConfiguration = Depends(get_embed_configuration),
    container: Container = Depends(get_container),
) -> dict:
    session_id = _resolve_session_id(x_session_id, data.session_id)
    client_ip = get_client_ip(request.headers, request.client.host if request.client else None)

    context = MessageContext(
        message=data.message,
        platform=PlatformType.EMBED,
        platform_chat_id=session_id,
        config_id=config.id,
        config=config,
        visitor_name=data.visitor_name.strip() or DEFAULT_VISITOR_NAME,
        client_identifier=build_identifier(client_ip, session_id),
    )
    response = await container.pipeline.process(context)
    raise_for_pipeline_failure(response)

    return {
        "success": True,
        "response": response.content,
        "conversation_id": response.conversation_id,
    }


@router.get("/{token}/messages")
async def get_messages(
    x_session_id: str | None = Header(None),
    session_id: str | None = Query(None),
    config: ChatbotConfiguration = Depends(get_embed_configuration),
    container: Container = Depends(get_container),
) -> dict:
    session_id = _resolve_session_id(x_session_id, session_id)
    conversation = await _find_session_conversation(container, session_id, config.id)

    # עדיין לא נשלחה הודעה - רשימה ריקה ולא שגיאה
    if conversation is None:
        return {"success": True, "messages": [], "conversation_status": None}

    messages = await container.messages.get_transcript(conversation.id)
    return {
        "success": True,
        "messages": [
            {
                "id": m.id,
                "sender_type": m.sender_type.value,
                "message": m.message,
                "timestamp": m.timestamp.isoformat() if m.timestamp else None,
            }
            for m in messages
        ],
        "conversation_status": conversation.status.value,
    }


@router.post("/{token}/end")
async def end_conversation(
    data: SessionRequest | None = None,
    x_session_id: str | None = Header(None),
    config: ChatbotConfiguration = Depends(get_embed_configuration),
    container: Container = Depends(get_container),
) -> dict:
    session_id = _resolve_session_id(x_session_id, data.session_id if data else None)
    conversation = await _find_session_conversation(container, session_id, config.id)
    if conversation is None:
        raise ConversationNotFoundError(session_id)

    await container.conversations.end(conversation.id)
    return {"success": True, "message": "Conversation ended"}


@router.post("/{token}/speech")
async def generate_speech(
    data: SpeechRequest,
    config: ChatbotConfiguration = Depends(get_embed_configuration),
    container: Container = Depends(get_container),
) -> dict:
    result = await container.ai_client.generate_speech(
        data.text, model=data.model, voice=data.voice, speed=data.speed
    )
    if isinstance(result, GatewayFailure):
        raise_for_gateway_failure(result)
    return {"success": True, "audio": result.audio_base64, "content_type": result.content_type}


@router.post("/{token}/transcribe")
async def transcribe_audio(
    data: TranscribeRequest,
    config: ChatbotConfiguration = Depends(get_embed_configuration),
    container: Container = Depends(get_container),
) -> dict:
    result = await container.ai_client.transcribe_audio(
        data.audio, model=data.model, language=data.language
    )
    if isinstance(result, GatewayFailure):
        raise_for_gateway_failure(result)
    return {"success": True, "text": result.text}
