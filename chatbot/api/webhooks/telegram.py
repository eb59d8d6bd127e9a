"""
Telegram Webhook Handler - Bot Gateway Layer

בוט נפרד לכל קונפיגורציה: /telegram/{config_id}/webhook.
ההודעה עוברת ב-Message Pipeline והתשובה נשלחת ב-background task,
כך שטלגרם מקבל 200 מיד ולא שולח את העדכון שוב.
"""
from typing import Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, ConfigDict, Field

from chatbot.api.dependencies.webhook_auth import verify_telegram_webhook_secret
from chatbot.container import Container, get_container
from chatbot.core.exceptions import TelegramError
from chatbot.core.logging import get_logger
from chatbot.db.models.chatbot_configuration import ChatbotConfiguration
from chatbot.db.models.conversation import PlatformType
from chatbot.domain.services.message_pipeline import MessageContext, MessageResponse
from chatbot.domain.services.message_pipeline.context import PIPELINE_ERROR
from chatbot.domain.services.telegram_client import (
    GENERIC_ERROR_REPLY,
    START_GREETING,
    TelegramClient,
)

logger = get_logger(__name__)

router = APIRouter()

START_COMMAND = "/start"
DEFAULT_TELEGRAM_NAME = "Telegram User"


class TelegramUser(BaseModel):
    id: int
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int
    type: str = "private"


class TelegramMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: int
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    chat: TelegramChat
    text: Optional[str] = None
    date: int = 0


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None


def telegram_visitor_name(user: Optional[TelegramUser]) -> str:
    first_name = (user.first_name if user else "") or DEFAULT_TELEGRAM_NAME
    return f"{first_name} (Telegram)"


def reply_text(response: MessageResponse) -> str:
    """שגיאה פנימית מוחלפת בהודעה כללית; שאר הדחיות (rate limit וכו') מוצגות כמו שהן"""
    if not response.success and response.error_type == PIPELINE_ERROR:
        return GENERIC_ERROR_REPLY
    return response.text or GENERIC_ERROR_REPLY


async def send_telegram_message(
    telegram: TelegramClient,
    bot_token: str,
    chat_id: str,
    text: str,
) -> None:
    """Send a reply; failures are logged since the webhook already answered"""
    try:
        await telegram.send_message(bot_token, chat_id, text)
    except (TelegramError, httpx.HTTPError) as e:
        logger.error(
            "Telegram send failed",
            extra_data={"chat_id": chat_id, "error": str(e)},
            exc_info=True
        )


def _queue_reply(
    background_tasks: BackgroundTasks,
    container: Container,
    config: ChatbotConfiguration,
    chat_id: str,
    text: str,
) -> None:
    background_tasks.add_task(
        send_telegram_message,
        container.telegram,
        config.telegram_bot_token,
        chat_id,
        text,
    )


async def _handle_start(container: Container, config: ChatbotConfiguration, chat_id: str) -> None:
    """/start פותח מחדש שיחה שהסתיימה באותו צ'אט"""
    conversation = await container.conversations.find_by_platform(
        PlatformType.TELEGRAM, chat_id, config.id
    )
    if conversation is not None and not conversation.is_active:
        await container.conversations.reactivate(conversation.id)
        logger.info(
            "Telegram conversation reactivated",
            extra_data={"conversation_id": conversation.id, "config_id": config.id},
        )


@router.post(
    "/{config_id}/webhook",
    summary="Webhook - Telegram (קבלת עדכונים נכנסים)",
    description="נקודת כניסה לעדכוני Telegram Bot API עבור קונפיגורציה אחת.",
)
async def telegram_webhook(
    update: TelegramUpdate,
    background_tasks: BackgroundTasks,
    config: ChatbotConfiguration = Depends(verify_telegram_webhook_secret),
    container: Container = Depends(get_container),
):
    message = update.message
    # עדכונים שאינם הודעת טקסט (תמונות, עריכות...) - מאשרים ומתעלמים
    if message is None or not message.text:
        return {"ok": True}

    chat_id = str(message.chat.id)
    text = message.text.strip()

    if text == START_COMMAND:
        await _handle_start(container, config, chat_id)
        _queue_reply(background_tasks, container, config, chat_id, START_GREETING)
        return {"ok": True}

    context = MessageContext(
        message=text,
        platform=PlatformType.TELEGRAM,
        platform_chat_id=chat_id,
        config_id=config.id,
        config=config,
        visitor_name=telegram_visitor_name(message.from_user),
    )
    response = await container.pipeline.process(context)

    if not response.success:
        logger.info(
            "Telegram message rejected by pipeline",
            extra_data={"config_id": config.id, "error_type": response.error_type},
        )

    _queue_reply(background_tasks, container, config, chat_id, reply_text(response))
    return {"ok": True}
