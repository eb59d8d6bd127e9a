"""
Rate Limiter - מגבלות הודעות לפי מזהה וגלובליות, ובדיקת אורך הודעה.

מונים בחלונות קבועים ב-Redis: INCR, ו-EXPIRE כשהמונה נוצר (ערך 1).
זה קירוב ולא sliding window מדויק, ומרוץ בין שני workers יכול לגרום
לחריגה של הודעה אחת. הבדיקה (check) והספירה (increment_counters) הן
שני שלבים נפרדים: הצינור סופר רק אחרי שהתשובה נשמרה.
"""
import enum
import hashlib
import ipaddress
from dataclasses import dataclass
from typing import Mapping

from chatbot.core.config import settings
from chatbot.core.logging import get_logger
from chatbot.core.redis_client import get_redis
from chatbot.domain.stores.config_store import ConfigStore

logger = get_logger(__name__)

KEY_PREFIX = "chatbot_rate_"
GLOBAL_MINUTE_KEY = "chatbot_rate_global_minute"
GLOBAL_HOUR_KEY = "chatbot_rate_global_hour"

MINUTE = 60
HOUR = 3600
DAY = 86400

DEFAULT_IP = "0.0.0.0"


class LimitType(str, enum.Enum):
    MINUTE_LIMIT = "minute_limit"
    HOUR_LIMIT = "hour_limit"
    DAY_LIMIT = "day_limit"
    GLOBAL_MINUTE_LIMIT = "global_minute_limit"
    GLOBAL_HOUR_LIMIT = "global_hour_limit"
    MESSAGE_TOO_LONG = "message_too_long"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: LimitType | None = None
    message: str = ""
    max_length: int | None = None
    actual_length: int | None = None

    @classmethod
    def allow(cls) -> "RateLimitDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: LimitType, message: str, **kwargs) -> "RateLimitDecision":
        return cls(allowed=False, reason=reason, message=message, **kwargs)


@dataclass(frozen=True)
class RateLimits:
    per_minute: int
    per_hour: int
    per_day: int
    global_per_minute: int
    global_per_hour: int
    max_message_length: int


# מפתח ב-ConfigStore -> שם שדה ב-Settings (ברירת מחדל)
LIMIT_OPTIONS = {
    "per_minute": ("rate_limit_per_minute", "RATE_LIMIT_PER_MINUTE"),
    "per_hour": ("rate_limit_per_hour", "RATE_LIMIT_PER_HOUR"),
    "per_day": ("rate_limit_per_day", "RATE_LIMIT_PER_DAY"),
    "global_per_minute": ("rate_limit_global_per_minute", "RATE_LIMIT_GLOBAL_PER_MINUTE"),
    "global_per_hour": ("rate_limit_global_per_hour", "RATE_LIMIT_GLOBAL_PER_HOUR"),
    "max_message_length": ("max_message_length", "MAX_MESSAGE_LENGTH"),
}


def _identifier_key(identifier: str, window: str) -> str:
    digest = hashlib.md5(f"{identifier}_{window}".encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest}"


def get_client_ip(headers: Mapping[str, str], peer_host: str | None) -> str:
    """
    IP הלקוח: הערך הראשון ב-X-Forwarded-For, אחרת כתובת ה-peer.
    ערך שאינו IP תקין הופך ל-0.0.0.0.
    """
    candidate = ""
    forwarded = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
    elif peer_host:
        candidate = peer_host

    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return DEFAULT_IP


def build_identifier(ip: str, session_id: str | None = None) -> str:
    return f"{ip}_{session_id}" if session_id else ip


class RateLimiter:
    """Per-identifier and global message limits backed by Redis counters"""

    def __init__(self, config_store: ConfigStore | None = None) -> None:
        self._config_store = config_store

    async def get_limits(self) -> RateLimits:
        values: dict[str, int] = {}
        for field_name, (option_key, setting_name) in LIMIT_OPTIONS.items():
            default = getattr(settings, setting_name)
            if self._config_store is None:
                values[field_name] = default
            else:
                values[field_name] = await self._config_store.get_int(option_key, default)
        return RateLimits(**values)

    @staticmethod
    def _check_length(message: str, max_length: int) -> RateLimitDecision:
        if len(message) <= max_length:
            return RateLimitDecision.allow()
        return RateLimitDecision.deny(
            LimitType.MESSAGE_TOO_LONG,
            f"Your message is too long. Maximum allowed length is {max_length} characters.",
            max_length=max_length,
            actual_length=len(message),
        )

    async def check(self, identifier: str, message: str = "") -> RateLimitDecision:
        """
        בודק בלי לספור. סדר: אורך הודעה (אם נשלחה), דקה/שעה/יום למזהה,
        ואז דקה/שעה גלובליים. עוצר בכשל הראשון.
        """
        limits = await self.get_limits()

        if message:
            length_decision = self._check_length(message, limits.max_message_length)
            if not length_decision.allowed:
                return length_decision

        identifier = identifier or DEFAULT_IP
        r = await get_redis()
        counts = await r.mget(
            _identifier_key(identifier, "minute"),
            _identifier_key(identifier, "hour"),
            _identifier_key(identifier, "day"),
            GLOBAL_MINUTE_KEY,
            GLOBAL_HOUR_KEY,
        )
        minute, hour, day, global_minute, global_hour = (int(c or 0) for c in counts)

        if minute >= limits.per_minute:
            decision = RateLimitDecision.deny(
                LimitType.MINUTE_LIMIT,
                "Rate limit exceeded. Please wait before sending more messages. "
                f"You can send {limits.per_minute} messages per minute.",
            )
        elif hour >= limits.per_hour:
            decision = RateLimitDecision.deny(
                LimitType.HOUR_LIMIT,
                "Rate limit exceeded. You have reached your hourly message limit "
                f"of {limits.per_hour} messages.",
            )
        elif day >= limits.per_day:
            decision = RateLimitDecision.deny(
                LimitType.DAY_LIMIT,
                "Rate limit exceeded. You have reached your daily message limit "
                f"of {limits.per_day} messages.",
            )
        elif global_minute >= limits.global_per_minute:
            decision = RateLimitDecision.deny(
                LimitType.GLOBAL_MINUTE_LIMIT,
                "The system is currently experiencing high traffic. Please try again in a minute.",
            )
        elif global_hour >= limits.global_per_hour:
            decision = RateLimitDecision.deny(
                LimitType.GLOBAL_HOUR_LIMIT,
                "The system has reached its hourly message limit. Please try again later.",
            )
        else:
            return RateLimitDecision.allow()

        logger.warning(
            "Rate limit hit",
            extra_data={"reason": decision.reason.value},
        )
        return decision

    async def increment_counters(self, identifier: str) -> None:
        identifier = identifier or DEFAULT_IP
        r = await get_redis()
        counters = (
            (_identifier_key(identifier, "minute"), MINUTE),
            (_identifier_key(identifier, "hour"), HOUR),
            (_identifier_key(identifier, "day"), DAY),
            (GLOBAL_MINUTE_KEY, MINUTE),
            (GLOBAL_HOUR_KEY, HOUR),
        )
        values = []
        for key, ttl in counters:
            count = await r.incr(key)
            if count == 1:
                await r.expire(key, ttl)
            values.append(count)

        logger.debug(
            "Rate limit counters incremented",
            extra_data={
                "minute": values[0],
                "hour": values[1],
                "day": values[2],
                "global_minute": values[3],
                "global_hour": values[4],
            },
        )

    async def reset_all(self) -> int:
        """מחיקת כל המונים. מחזיר את מספר המפתחות שנמחקו."""
        r = await get_redis()
        keys = [key async for key in r.scan_iter(match=f"{KEY_PREFIX}*")]
        if keys:
            await r.delete(*keys)
        logger.info("All rate limits reset", extra_data={"deleted_keys": len(keys)})
        return len(keys)
