"""
אימות webhook נכנס מטלגרם, לכל קונפיגורציה בנפרד.

טלגרם שולח את הכותרת ``X-Telegram-Bot-Api-Secret-Token`` עם כל בקשה
אם הוגדר ``secret_token`` ב-``setWebhook``. הסוד נשמר על הקונפיגורציה.

שימוש:
    @router.post("/{config_id}/webhook")
    async def telegram_webhook(
        ...,
        config: ChatbotConfiguration = Depends(verify_telegram_webhook_secret),
    ):
        ...
"""
import hmac

from fastapi import Depends, Header, HTTPException, status

from chatbot.container import Container, get_container
from chatbot.core.logging import get_logger
from chatbot.db.models.chatbot_configuration import ChatbotConfiguration

logger = get_logger(__name__)


async def verify_telegram_webhook_secret(
    config_id: int,
    x_telegram_bot_api_secret_token: str | None = Header(None),
    container: Container = Depends(get_container),
) -> ChatbotConfiguration:
    """
    - קונפיגורציה בלי סוד, כותרת חסרה או סוד שגוי - 403 Forbidden.
    - קונפיגורציה בלי bot token - 404.
    """
    config = await container.configurations.get(config_id)
    expected = config.telegram_webhook_secret if config is not None else None

    if not expected or not x_telegram_bot_api_secret_token:
        logger.warning(
            "בקשת webhook ללא סוד תקף",
            extra_data={"config_id": config_id},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid secret token",
        )

    # השוואה בטוחה מפני timing attacks
    if not hmac.compare_digest(x_telegram_bot_api_secret_token, expected):
        logger.warning("בקשת webhook עם טוקן שגוי", extra_data={"config_id": config_id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid secret token",
        )

    if not config.telegram_bot_token:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Configuration not found",
        )
    return config
