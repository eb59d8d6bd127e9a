"""
Config Store - key/value הגדרות ריצה על גבי Redis.

ערכים נשמרים כ-JSON תחת prefix קבוע. משמש גם לאחסון מצב טוקני OAuth2.
"""
import json
from typing import Any

from chatbot.core.logging import get_logger
from chatbot.core.redis_client import get_redis

logger = get_logger(__name__)

OPTION_PREFIX = "chatbot_option:"


class ConfigStore:
    """get(key, default) / set(key, value) / delete(key)"""

    def __init__(self, prefix: str = OPTION_PREFIX) -> None:
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str, default: Any = None) -> Any:
        r = await get_redis()
        raw = await r.get(self._key(key))
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(
                "Config store value is not valid JSON, using default",
                extra_data={"key": key},
            )
            return default

    async def set(self, key: str, value: Any) -> None:
        r = await get_redis()
        await r.set(self._key(key), json.dumps(value, ensure_ascii=False))

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        r = await get_redis()
        await r.delete(*(self._key(k) for k in keys))

    async def get_int(self, key: str, default: int) -> int:
        value = await self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    async def get_float(self, key: str, default: float) -> float:
        value = await self.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            return default
