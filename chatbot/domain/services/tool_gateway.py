"""
Tool Gateway - הפעלת actions מול webhook חיצוני (n8n).

כל קונפיגורציה מגדירה webhook, סוד HMAC, headers ורשימת actions.
ה-actions הופכים ל-function schemas עבור המודל, וקריאה של המודל
נשלחת כ-POST של {action, params, context} ל-webhook.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from chatbot.core.config import settings
from chatbot.core.exceptions import (
    ActionNotFoundError,
    ToolNotConfiguredError,
    WebhookHttpError,
    WebhookTransportError,
)
from chatbot.core.logging import get_logger
from chatbot.db.models.chatbot_configuration import ChatbotConfiguration

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TEST_CONNECTION_ACTION = "_test_connection"

PARAMETER_TYPES = {"string", "number", "integer", "boolean", "array", "object"}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _parameter_type(value: Any) -> str:
    # סוג לא מוכר (או לא מחרוזת) הופך ל-string
    return value if isinstance(value, str) and value in PARAMETER_TYPES else "string"


@dataclass(frozen=True)
class ActionParameter:
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False


@dataclass(frozen=True)
class ActionDefinition:
    name: str
    description: str = ""
    parameters: tuple[ActionParameter, ...] = ()


@dataclass(frozen=True)
class ToolSettings:
    enabled: bool = False
    webhook_url: str = ""
    webhook_secret: str = ""
    timeout: int = 300
    headers: tuple[dict[str, str], ...] = ()
    actions: tuple[ActionDefinition, ...] = field(default_factory=tuple)

    @classmethod
    def parse(cls, raw: str | dict | None) -> "ToolSettings":
        """JSON של הגדרות n8n. ערך ריק או פגום = כלים כבויים."""
        if not raw:
            return cls(timeout=settings.TOOL_WEBHOOK_DEFAULT_TIMEOUT)
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                logger.warning("n8n_settings is not valid JSON, tools disabled")
                return cls(timeout=settings.TOOL_WEBHOOK_DEFAULT_TIMEOUT)
        if not isinstance(raw, dict):
            return cls(timeout=settings.TOOL_WEBHOOK_DEFAULT_TIMEOUT)

        headers = tuple(
            {"name": str(h["name"]), "value": str(h.get("value", ""))}
            for h in _as_list(raw.get("headers"))
            if isinstance(h, dict) and h.get("name")
        )

        actions = []
        for action in _as_list(raw.get("actions")):
            if not isinstance(action, dict) or not action.get("name"):
                continue
            parameters = tuple(
                ActionParameter(
                    name=str(p["name"]),
                    type=_parameter_type(p.get("type")),
                    description=p.get("description") or "",
                    required=bool(p.get("required", False)),
                )
                for p in _as_list(action.get("parameters"))
                if isinstance(p, dict) and p.get("name")
            )
            actions.append(ActionDefinition(
                name=str(action["name"]),
                description=action.get("description") or "",
                parameters=parameters,
            ))

        try:
            timeout = int(raw.get("timeout") or settings.TOOL_WEBHOOK_DEFAULT_TIMEOUT)
        except (TypeError, ValueError):
            timeout = settings.TOOL_WEBHOOK_DEFAULT_TIMEOUT

        return cls(
            enabled=bool(raw.get("enabled", False)),
            webhook_url=raw.get("webhook_url") or "",
            webhook_secret=raw.get("webhook_secret") or "",
            timeout=timeout,
            headers=headers,
            actions=tuple(actions),
        )

    def find_action(self, name: str) -> ActionDefinition | None:
        for action in self.actions:
            if action.name == name:
                return action
        return None


def extract_message(response: Any) -> str | None:
    """
    מחלץ הודעה שטוחה מתשובות עטופות של כלי אוטומציה.

    סדר: מחרוזת כמו שהיא; message/output/result ברמה העליונה; האיבר הראשון
    של מערך (output[0].content[0].text.message, אחר כך text כמחרוזת,
    message, output, result); ולבסוף output[0].content[0].text.message
    ברמה העליונה. None אם אין התאמה.
    """
    if isinstance(response, str):
        return response

    if isinstance(response, dict):
        for key in ("message", "output", "result"):
            if isinstance(response.get(key), str):
                return response[key]

    if isinstance(response, list) and response:
        first = response[0]
        if isinstance(first, dict):
            text = _nested_text(first)
            if isinstance(text, dict) and isinstance(text.get("message"), str):
                return text["message"]
            if isinstance(text, str):
                return text
            for key in ("message", "output", "result"):
                if isinstance(first.get(key), str):
                    return first[key]

    if isinstance(response, dict):
        text = _nested_text(response)
        if isinstance(text, dict) and isinstance(text.get("message"), str):
            return text["message"]

    return None


def _nested_text(node: dict) -> Any:
    """node.output[0].content[0].text, או None"""
    try:
        return node["output"][0]["content"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _now_iso() -> str:
    return datetime.now(ZoneInfo(settings.SITE_TIMEZONE)).isoformat(timespec="seconds")


class ToolGateway:
    """Builds function schemas and executes actions against the n8n webhook"""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    @staticmethod
    def settings_for(config: ChatbotConfiguration | None) -> ToolSettings:
        if config is None:
            return ToolSettings.parse(None)
        return ToolSettings.parse(config.n8n_settings)

    def is_enabled_for(self, config: ChatbotConfiguration | None) -> bool:
        tool_settings = self.settings_for(config)
        return tool_settings.enabled and bool(tool_settings.webhook_url) and bool(tool_settings.actions)

    def build_function_schemas(self, config: ChatbotConfiguration | None) -> list[dict[str, Any]]:
        schemas = []
        for action in self.settings_for(config).actions:
            properties = {
                p.name: {"type": p.type, "description": p.description}
                for p in action.parameters
            }
            schemas.append({
                "type": "function",
                "function": {
                    "name": action.name,
                    "description": action.description,
                    "parameters": {
                        "type": "object",
                        "properties": properties,
                        "required": [p.name for p in action.parameters if p.required],
                    },
                },
            })
        return schemas

    @staticmethod
    def _build_headers(custom_headers, secret: str, body: bytes) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        for header in custom_headers or ():
            if header.get("name"):
                headers[header["name"]] = header.get("value", "")
        if secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, secret)
        return headers

    async def _post(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        secret: str,
        custom_headers,
        timeout: float,
    ) -> httpx.Response:
        body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        headers = self._build_headers(custom_headers, secret, body)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.error(
                "Tool webhook request failed",
                extra_data={"action": payload.get("action"), "error": str(exc)},
            )
            raise WebhookTransportError(f"n8n request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            logger.warning(
                "Tool webhook returned error status",
                extra_data={"action": payload.get("action"), "status_code": response.status_code},
            )
            raise WebhookHttpError(response.status_code, response.text)
        return response

    async def execute(
        self,
        config: ChatbotConfiguration,
        action_name: str,
        params: dict[str, Any] | None,
        context: dict[str, Any] | None = None,
    ) -> Any:
        """
        מפעיל action ומחזיר את התוצאה.

        Raises:
            ToolNotConfiguredError: כלים כבויים או URL ריק
            ActionNotFoundError: שם action שלא הוגדר
            WebhookHttpError: תשובה שאינה 2xx
            WebhookTransportError: כשל רשת / timeout
        """
        tool_settings = self.settings_for(config)
        if not tool_settings.enabled or not tool_settings.webhook_url:
            raise ToolNotConfiguredError()
        if tool_settings.find_action(action_name) is None:
            raise ActionNotFoundError(action_name)

        chatbot_name = config.name or ""
        payload = {
            "action": action_name,
            "params": params or {},
            "context": {
                "site_url": settings.SITE_URL,
                "timestamp": _now_iso(),
                "chatbot_name": chatbot_name,
                **(context or {}),
            },
        }

        logger.info(
            "Executing tool action",
            extra_data={"action": action_name, "chatbot": chatbot_name},
        )
        response = await self._post(
            tool_settings.webhook_url,
            payload,
            secret=tool_settings.webhook_secret,
            custom_headers=tool_settings.headers,
            timeout=tool_settings.timeout,
        )

        try:
            result = response.json()
        except ValueError:
            return {"success": True, "result": response.text}

        extracted = extract_message(result)
        if extracted is not None:
            return {"success": True, "message": extracted, "raw_response": result}
        return result

    async def test_connection(
        self,
        webhook_url: str,
        secret: str = "",
        headers: list[dict[str, str]] | None = None,
    ) -> None:
        """שולח ping של _test_connection. זורק ToolExecutionError אם לא חזר 2xx."""
        if not webhook_url:
            raise ToolNotConfiguredError("Webhook URL is not configured")

        payload = {
            "action": TEST_CONNECTION_ACTION,
            "params": {},
            "context": {
                "site_url": settings.SITE_URL,
                "timestamp": _now_iso(),
                "test": True,
            },
        }
        await self._post(
            webhook_url,
            payload,
            secret=secret,
            custom_headers=headers,
            timeout=settings.TOOL_TEST_TIMEOUT_SECONDS,
        )
        logger.info("Tool webhook connection test succeeded")
