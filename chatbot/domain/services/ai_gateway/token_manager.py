"""
OAuth2 Token Manager for the LLM gateway.

מחזיק access/refresh token יחיד לכל ההתקנה, שמור ב-ConfigStore (Redis).
רענון מוגן בנעילה מבוזרת של Redis עם TTL, כך שגם כמה workers במקביל
יבצעו בקשת רענון אחת בלבד, ונעילה של תהליך שקרס משתחררת לבד.
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
from redis.exceptions import LockError

from chatbot.core.config import settings
from chatbot.core.logging import get_logger, mask_secret
from chatbot.core.redis_client import get_redis
from chatbot.domain.stores.config_store import ConfigStore
from chatbot.domain.services.ai_gateway.results import FailureKind, RefreshResult
from chatbot.domain.services.ai_gateway.transport import GatewayTransport, safe_json

logger = get_logger(__name__)

ACCESS_TOKEN_KEY = "aipass_access_token"
REFRESH_TOKEN_KEY = "aipass_refresh_token"
TOKEN_EXPIRY_KEY = "aipass_token_expiry"

REFRESH_LOCK_KEY = "chatbot_aipass_refresh_lock"
REFRESH_COOLDOWN_KEY = "chatbot_aipass_refresh_cooldown"

TOKEN_ENDPOINT = "/oauth2/token"


@dataclass(frozen=True)
class TokenState:
    access_token: str = ""
    refresh_token: str = ""
    expiry: int = 0  # epoch seconds, 0 = ללא תפוגה ידועה

    def is_expiring(self, now: float, margin: int) -> bool:
        if self.expiry <= 0:
            return False
        return now >= self.expiry - margin

    def is_valid(self, now: float, margin: int) -> bool:
        return bool(self.access_token) and not self.is_expiring(now, margin)


def extract_token_error(data: Any) -> str:
    """error_description, אחר כך error.message (או ה-error כולו כ-JSON), אחר כך error"""
    if not isinstance(data, dict):
        return "Unknown error"
    if data.get("error_description"):
        return str(data["error_description"])
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or json.dumps(error))
    if error:
        return str(error)
    return "Unknown error"


def parse_expires_in(value: Any) -> int | None:
    """
    expires_in מהספק: מספר שלם או מחרוזת מספרית.
    None אם חסר; ValueError אם הערך לא מספר.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"expires_in must be an integer, got {type(value).__name__}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"expires_in must be an integer, got {value}")
    seconds = int(value)
    if seconds <= 0:
        raise ValueError(f"expires_in must be positive, got {seconds}")
    return seconds


class TokenManager:
    """Owns the gateway credential set and its refresh lifecycle"""

    def __init__(
        self,
        config_store: ConfigStore,
        transport: GatewayTransport,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        refresh_margin: int | None = None,
        default_expires_in: int | None = None,
        lock_timeout: int | None = None,
        wait_seconds: float | None = None,
        cooldown_seconds: int | None = None,
        request_timeout: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = config_store
        self._transport = transport
        self._client_id = client_id if client_id is not None else settings.AI_GATEWAY_CLIENT_ID
        self._client_secret = (
            client_secret if client_secret is not None else settings.AI_GATEWAY_CLIENT_SECRET
        )
        self._margin = refresh_margin if refresh_margin is not None else settings.TOKEN_REFRESH_MARGIN_SECONDS
        self._default_expires_in = (
            default_expires_in if default_expires_in is not None else settings.TOKEN_DEFAULT_EXPIRES_IN
        )
        self._lock_timeout = lock_timeout if lock_timeout is not None else settings.TOKEN_REFRESH_LOCK_TIMEOUT
        self._wait_seconds = wait_seconds if wait_seconds is not None else settings.TOKEN_REFRESH_WAIT_SECONDS
        self._cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else settings.TOKEN_REFRESH_COOLDOWN_SECONDS
        )
        self._request_timeout = (
            request_timeout if request_timeout is not None else settings.AI_REQUEST_TIMEOUT_SECONDS
        )
        self._clock = clock

    # ==================== State ====================

    async def get_state(self) -> TokenState:
        access_token = await self._store.get(ACCESS_TOKEN_KEY, "")
        refresh_token = await self._store.get(REFRESH_TOKEN_KEY, "")
        expiry = await self._store.get_int(TOKEN_EXPIRY_KEY, 0)
        return TokenState(
            access_token=access_token or "",
            refresh_token=refresh_token or "",
            expiry=expiry,
        )

    async def get_access_token(self) -> str:
        return (await self.get_state()).access_token

    async def store_tokens(
        self,
        access_token: str,
        refresh_token: str,
        expires_in: int | None = None,
    ) -> None:
        """
        שמירת טוקנים חדשים.

        כשהספק לא החזיר expires_in משתמשים בברירת המחדל (30 יום) ורושמים
        אזהרה: זו הנחה ולא ערך שהספק אישר.
        """
        if not expires_in:
            logger.warning(
                "Gateway did not return expires_in, using default token lifetime",
                extra_data={"default_expires_in": self._default_expires_in},
            )
            expires_in = self._default_expires_in

        expiry = int(self._clock()) + int(expires_in)
        await self._store.set(ACCESS_TOKEN_KEY, access_token)
        await self._store.set(REFRESH_TOKEN_KEY, refresh_token)
        await self._store.set(TOKEN_EXPIRY_KEY, expiry)

        logger.info(
            "Gateway tokens saved",
            extra_data={
                "access_token": mask_secret(access_token),
                "expires_in": int(expires_in),
            },
        )

    async def clear_tokens(self) -> None:
        await self._store.delete(ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY)
        r = await get_redis()
        await r.delete(REFRESH_COOLDOWN_KEY)
        logger.info("Gateway tokens cleared")

    async def status(self) -> dict[str, Any]:
        state = await self.get_state()
        now = self._clock()
        return {
            "has_access_token": bool(state.access_token),
            "has_refresh_token": bool(state.refresh_token),
            "expires_at": state.expiry or None,
            "expires_in_seconds": int(state.expiry - now) if state.expiry else None,
            "expiring": state.is_expiring(now, self._margin),
        }

    # ==================== Connection check ====================

    async def is_connected(self) -> bool:
        """
        True אם יש access token שלא בחלון 300 השניות שלפני התפוגה.

        בתוך החלון מנסים לרענן. אחרי רענון כושל נכנסים ל-cooldown,
        ובזמנו לא מנסים שוב ומחזירים False.
        """
        state = await self.get_state()
        if not state.access_token:
            return False

        if not state.is_expiring(self._clock(), self._margin):
            return True

        r = await get_redis()
        if await r.get(REFRESH_COOLDOWN_KEY):
            logger.debug("Token refresh is cooling down, reporting disconnected")
            return False

        result = await self.refresh()
        if not result.success:
            await r.set(REFRESH_COOLDOWN_KEY, "1", ex=self._cooldown_seconds)
            logger.warning(
                "Token refresh failed, entering cooldown",
                extra_data={"error": result.error, "cooldown_seconds": self._cooldown_seconds},
            )
            return False

        await r.delete(REFRESH_COOLDOWN_KEY)
        return True

    # ==================== Refresh ====================

    async def refresh(self, stale_token: str | None = None) -> RefreshResult:
        """
        רענון access token תחת נעילה מבוזרת.

        Args:
            stale_token: הטוקן שנדחה (401). אם אחרי קבלת הנעילה הטוקן השמור
                כבר שונה ממנו ותקף, תהליך אחר ריענן ואין צורך בבקשת רשת.
        """
        r = await get_redis()
        lock = r.lock(REFRESH_LOCK_KEY, timeout=self._lock_timeout)

        acquired = await lock.acquire(blocking=False)
        if not acquired:
            logger.info("Token refresh in progress elsewhere, waiting")
            acquired = await lock.acquire(blocking=True, blocking_timeout=self._wait_seconds)

        try:
            state = await self.get_state()
            if self._refreshed_elsewhere(state, stale_token):
                logger.info("Token already refreshed by another request")
                return RefreshResult.ok(network_call=False)

            if not acquired:
                logger.warning(
                    "Refresh lock still held after waiting, refreshing without lock",
                    extra_data={"wait_seconds": self._wait_seconds},
                )
            return await self._request_refresh(state)
        finally:
            if acquired:
                try:
                    await lock.release()
                except LockError:
                    # ה-TTL פג לפני שסיימנו - הנעילה כבר לא שלנו
                    logger.warning("Refresh lock expired before release")

    def _refreshed_elsewhere(self, state: TokenState, stale_token: str | None) -> bool:
        if not state.is_valid(self._clock(), self._margin):
            return False
        if stale_token is None:
            return True
        return state.access_token != stale_token

    async def _request_refresh(self, state: TokenState) -> RefreshResult:
        if not state.refresh_token:
            logger.error("No refresh token available")
            return RefreshResult.failed(
                FailureKind.REAUTHORIZATION_REQUIRED,
                "No refresh token available",
                network_call=False,
            )

        body = {
            "grantType": "refresh_token",
            "refreshToken": state.refresh_token,
            "clientId": self._client_id,
        }
        if self._client_secret:
            body["clientSecret"] = self._client_secret

        logger.info("Refreshing gateway access token")
        try:
            response = await self._transport.request(
                "POST", TOKEN_ENDPOINT, json=body, timeout=self._request_timeout
            )
        except httpx.HTTPError as exc:
            logger.error("Token refresh request failed", extra_data={"error": str(exc)})
            return RefreshResult.failed(FailureKind.TRANSPORT, f"Connection error: {exc}")

        data = safe_json(response)

        if response.status_code in (400, 401):
            error = extract_token_error(data)
            logger.error(
                "Refresh token rejected, clearing stored tokens",
                extra_data={"status_code": response.status_code, "error": error},
            )
            await self.clear_tokens()
            return RefreshResult.failed(
                FailureKind.REAUTHORIZATION_REQUIRED, error, status_code=response.status_code
            )

        if response.status_code != 200:
            error = extract_token_error(data)
            logger.error(
                "Token refresh failed",
                extra_data={"status_code": response.status_code, "error": error},
            )
            return RefreshResult.failed(
                FailureKind.API_ERROR, error, status_code=response.status_code
            )

        if not isinstance(data, dict) or not data.get("access_token"):
            return RefreshResult.failed(FailureKind.INVALID_RESPONSE, "Invalid response format")

        try:
            expires_in = parse_expires_in(data.get("expires_in"))
        except ValueError as exc:
            logger.error("Token response has invalid expires_in", extra_data={"error": str(exc)})
            return RefreshResult.failed(FailureKind.INVALID_RESPONSE, f"Invalid response format: {exc}")

        await self.store_tokens(
            data["access_token"],
            data.get("refresh_token") or state.refresh_token,
            expires_in,
        )
        logger.info("Token refreshed successfully")
        return RefreshResult.ok(network_call=True)
