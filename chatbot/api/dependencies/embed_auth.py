"""
אימות embed token בנתיב /embed/{token}/...

הטוקן הוא 64 תווי hex קטנים, ומשויך לקונפיגורציה שה-embed שלה מופעל.
"""
import re

from fastapi import Depends, Path

from chatbot.container import Container, get_container
from chatbot.core.exceptions import UnauthorizedException
from chatbot.core.logging import get_logger
from chatbot.db.models.chatbot_configuration import ChatbotConfiguration

logger = get_logger(__name__)

EMBED_TOKEN_RE = re.compile(r"^[a-f0-9]{64}$")
INVALID_TOKEN_MESSAGE = "Invalid or disabled embed token"


def is_valid_embed_token_format(token: str | None) -> bool:
    return bool(token) and EMBED_TOKEN_RE.match(token) is not None


async def get_embed_configuration(
    token: str = Path(...),
    container: Container = Depends(get_container),
) -> ChatbotConfiguration:
    if not is_valid_embed_token_format(token):
        raise UnauthorizedException(INVALID_TOKEN_MESSAGE)

    config = await container.configurations.get_by_embed_token(token)
    if config is None:
        logger.warning("Embed request with unknown or disabled token")
        raise UnauthorizedException(INVALID_TOKEN_MESSAGE)
    return config
