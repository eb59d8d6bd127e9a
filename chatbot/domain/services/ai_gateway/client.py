"""
LLM Gateway API client (AIPass, OpenAI-compatible).

כל endpoint עם Bearer עובר דרך _authorized_request, שמיישם את מדיניות
retry-once-on-401: בקשה, ואם התקבל 401 - רענון טוקן וניסיון חוזר אחד בלבד.
"""
import base64
import binascii
import json
from typing import Any

import httpx

from chatbot.core.config import settings
from chatbot.core.exceptions import AIGatewayError
from chatbot.core.logging import get_logger
from chatbot.domain.services.ai_gateway.results import (
    CompletionResult,
    CompletionSuccess,
    FailureKind,
    GatewayFailure,
    ModelListResult,
    ModelListSuccess,
    SpeechResult,
    SpeechSuccess,
    TranscriptionResult,
    TranscriptionSuccess,
    UsageSummaryResult,
    UsageSummarySuccess,
)
from chatbot.domain.services.ai_gateway.token_manager import TokenManager
from chatbot.domain.services.ai_gateway.transport import GatewayTransport, safe_json

logger = get_logger(__name__)

COMPLETIONS_ENDPOINT = "/oauth2/v1/chat/completions"
MODELS_ENDPOINT = "/api/v1/usage/models"
USAGE_SUMMARY_ENDPOINT = "/api/v1/usage/me/summary"
SPEECH_ENDPOINT = "/oauth2/v1/audio/speech"
TRANSCRIPTION_ENDPOINT = "/oauth2/v1/audio/transcriptions"

NOT_CONNECTED_MESSAGE = "AIPass not connected"
MAX_SPEECH_INPUT_CHARS = 4096

# ספקים לא עקביים בסוג השגיאה - מזהים חריגת תקציב גם לפי הטקסט
BUDGET_ERROR_TYPE = "budget_exceeded"
BUDGET_KEYWORDS = ("budget", "balance", "insufficient")


def extract_error(data: Any, raw_body: str = "") -> tuple[str, str | None]:
    """
    (message, type) מתוך גוף שגיאה.

    {"error": {"message", "type"}} / {"error": "..."} / גוף גולמי.
    """
    if isinstance(data, dict) and "error" in data:
        error = data["error"]
        if isinstance(error, dict):
            message = error.get("message") or json.dumps(error)
            return str(message), error.get("type")
        if error:
            return str(error), None
    if raw_body:
        return raw_body[:500], None
    return "Unknown error", None


def is_budget_error(message: str, error_type: str | None) -> bool:
    if error_type == BUDGET_ERROR_TYPE:
        return True
    lowered = (message or "").lower()
    return any(keyword in lowered for keyword in BUDGET_KEYWORDS)


class AIGatewayClient:
    """Completion, model list, usage, speech and transcription calls"""

    def __init__(
        self,
        token_manager: TokenManager,
        transport: GatewayTransport,
        *,
        request_timeout: float | None = None,
        audio_timeout: float | None = None,
    ) -> None:
        self._tokens = token_manager
        self._transport = transport
        self._request_timeout = (
            request_timeout if request_timeout is not None else settings.AI_REQUEST_TIMEOUT_SECONDS
        )
        self._audio_timeout = (
            audio_timeout if audio_timeout is not None else settings.AI_AUDIO_TIMEOUT_SECONDS
        )

    @property
    def token_manager(self) -> TokenManager:
        return self._tokens

    async def is_connected(self) -> bool:
        return await self._tokens.is_connected()

    # ==================== Retry-once-on-401 ====================

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        access_token: str,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response | GatewayFailure:
        try:
            return await self._transport.request(
                method, path, access_token=access_token, timeout=timeout, **kwargs
            )
        except httpx.HTTPError as exc:
            logger.error(
                f"Gateway {operation} request failed",
                extra_data={"operation": operation, "error": str(exc), "type": type(exc).__name__},
            )
            return GatewayFailure(FailureKind.TRANSPORT, f"Connection error: {exc}")

    async def _authorized_request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response | GatewayFailure:
        if not await self._tokens.is_connected():
            logger.error(f"Gateway {operation} skipped: not connected")
            return GatewayFailure(FailureKind.NOT_CONNECTED, NOT_CONNECTED_MESSAGE)

        access_token = await self._tokens.get_access_token()
        response = await self._send(operation, method, path, access_token, timeout, **kwargs)
        if isinstance(response, GatewayFailure) or response.status_code != 401:
            return response

        logger.warning(
            f"Gateway {operation} got 401, refreshing token and retrying once",
            extra_data={"operation": operation},
        )
        refresh = await self._tokens.refresh(stale_token=access_token)
        if not refresh.success:
            kind = (
                FailureKind.REAUTHORIZATION_REQUIRED
                if refresh.failure and refresh.failure.kind == FailureKind.REAUTHORIZATION_REQUIRED
                else FailureKind.AUTHENTICATION
            )
            return GatewayFailure(kind, f"Authentication failed: {refresh.error}", status_code=401)

        access_token = await self._tokens.get_access_token()
        response = await self._send(operation, method, path, access_token, timeout, **kwargs)
        if isinstance(response, GatewayFailure) or response.status_code != 401:
            return response

        message, _ = extract_error(safe_json(response))
        logger.error(
            f"Gateway {operation} still unauthorized after token refresh",
            extra_data={"operation": operation},
        )
        return GatewayFailure(
            FailureKind.AUTHENTICATION, f"Authentication failed: {message}", status_code=401
        )

    # ==================== Chat completion ====================

    async def generate_completion(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> CompletionResult:
        model = model or settings.AI_MODEL
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": False,
        }
        if temperature is not None:
            body["temperature"] = float(temperature)
        if max_tokens:
            body["max_tokens"] = int(max_tokens)
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"

        logger.info(
            "Requesting chat completion",
            extra_data={
                "model": model,
                "max_tokens": max_tokens,
                "message_count": len(messages),
                "tool_count": len(tools or []),
            },
        )

        response = await self._authorized_request(
            "completion", "POST", COMPLETIONS_ENDPOINT, json=body, timeout=self._request_timeout
        )
        if isinstance(response, GatewayFailure):
            return response

        data = safe_json(response)
        if response.status_code != 200:
            message, error_type = extract_error(data, response.text)
            kind = FailureKind.BUDGET_EXCEEDED if is_budget_error(message, error_type) else FailureKind.API_ERROR
            error = AIGatewayError.from_response("completion", response, message=message)
            logger.error(
                f"Completion failed: {message}",
                extra_data={**error.details, "failure_kind": kind.value, "error_type": error_type},
            )
            return GatewayFailure(kind, message, status_code=response.status_code)

        return self._parse_completion(data, model)

    def _parse_completion(self, data: Any, model: str) -> CompletionResult:
        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (KeyError, IndexError, TypeError):
            message = None
        if not isinstance(message, dict):
            logger.error("Completion response missing choices[0].message")
            return GatewayFailure(FailureKind.INVALID_RESPONSE, "Invalid response format")

        usage = data.get("usage") or {}
        response_model = data.get("model") or model
        tool_calls = message.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            tool_calls = []
        content = message.get("content")

        # finish_reason=tool_calls בלי רשימת קריאות נבדק כמו תשובה רגילה
        if tool_calls:
            return CompletionSuccess(
                content=content, tool_calls=tool_calls, usage=usage, model=response_model
            )

        if content is None:
            logger.error("Completion response has no content")
            return GatewayFailure(
                FailureKind.INVALID_RESPONSE, "Invalid response format - no content"
            )

        return CompletionSuccess(content=content, usage=usage, model=response_model)

    # ==================== Usage API ====================

    async def _get_wrapped(self, operation: str, path: str) -> dict[str, Any] | GatewayFailure:
        """GET עם עטיפה {success, data} - מחזיר את data או כשל"""
        response = await self._authorized_request(
            operation, "GET", path, timeout=self._request_timeout
        )
        if isinstance(response, GatewayFailure):
            return response

        body = safe_json(response)
        if response.status_code != 200:
            if isinstance(body, dict) and body.get("message"):
                message = str(body["message"])
            else:
                message, _ = extract_error(body, response.text)
            return GatewayFailure(
                FailureKind.API_ERROR, f"API error: {message}", status_code=response.status_code
            )

        if not isinstance(body, dict):
            return GatewayFailure(FailureKind.INVALID_RESPONSE, "Invalid response format")

        if not body.get("success"):
            # הודעת הכשל של הספק מועברת כמו שהיא
            return GatewayFailure(FailureKind.API_ERROR, str(body.get("message") or "Request failed"))

        if "data" not in body:
            return GatewayFailure(FailureKind.INVALID_RESPONSE, "Invalid response format")
        return {"data": body["data"]}

    async def list_models(self) -> ModelListResult:
        result = await self._get_wrapped("models", MODELS_ENDPOINT)
        if isinstance(result, GatewayFailure):
            return result

        models: list[str] = []
        for item in result["data"] or []:
            if isinstance(item, str):
                models.append(item)
            elif isinstance(item, dict) and (item.get("id") or item.get("name")):
                models.append(str(item.get("id") or item.get("name")))
        return ModelListSuccess(models=models)

    async def get_usage_summary(self) -> UsageSummaryResult:
        result = await self._get_wrapped("usage", USAGE_SUMMARY_ENDPOINT)
        if isinstance(result, GatewayFailure):
            return result
        data = result["data"]
        return UsageSummarySuccess(data=data if isinstance(data, dict) else {"value": data})

    # ==================== Audio ====================

    async def generate_speech(
        self,
        text: str,
        model: str = "tts-1",
        voice: str = "alloy",
        speed: float = 1.0,
    ) -> SpeechResult:
        if not await self._tokens.is_connected():
            return GatewayFailure(FailureKind.NOT_CONNECTED, NOT_CONNECTED_MESSAGE)
        if not text:
            return GatewayFailure(FailureKind.INVALID_INPUT, "No text provided")

        body = {
            "model": model,
            "input": text[:MAX_SPEECH_INPUT_CHARS],
            "voice": voice,
            "speed": float(speed),
            "response_format": "mp3",
        }
        response = await self._authorized_request(
            "speech", "POST", SPEECH_ENDPOINT, json=body, timeout=self._audio_timeout
        )
        if isinstance(response, GatewayFailure):
            return response

        if response.status_code != 200:
            data = safe_json(response)
            if isinstance(data, dict) and not data.get("error") and data.get("message"):
                message = str(data["message"])
            elif data is None and response.text:
                message = f"API Error: {response.text[:200]}"
            else:
                message, _ = extract_error(data)
            logger.error(
                f"Speech generation failed: {message}",
                extra_data={"status_code": response.status_code},
            )
            return GatewayFailure(FailureKind.API_ERROR, message, status_code=response.status_code)

        if not response.content:
            return GatewayFailure(FailureKind.INVALID_RESPONSE, "Empty audio response")

        return SpeechSuccess(audio_base64=base64.b64encode(response.content).decode("ascii"))

    async def transcribe_audio(
        self,
        audio_base64: str,
        model: str = "whisper-1",
        language: str = "",
    ) -> TranscriptionResult:
        if not await self._tokens.is_connected():
            return GatewayFailure(FailureKind.NOT_CONNECTED, NOT_CONNECTED_MESSAGE)
        if not audio_base64:
            return GatewayFailure(FailureKind.INVALID_INPUT, "No audio data provided")

        try:
            audio = base64.b64decode(audio_base64, validate=True)
        except (binascii.Error, ValueError):
            audio = b""
        if not audio:
            return GatewayFailure(FailureKind.INVALID_INPUT, "Invalid audio data")

        form: dict[str, Any] = {"model": model}
        if language:
            form["language"] = language

        response = await self._authorized_request(
            "transcription",
            "POST",
            TRANSCRIPTION_ENDPOINT,
            data=form,
            files={"file": ("audio.webm", audio, "audio/webm")},
            timeout=self._audio_timeout,
        )
        if isinstance(response, GatewayFailure):
            return response

        data = safe_json(response)
        if response.status_code != 200:
            message, _ = extract_error(data)
            return GatewayFailure(FailureKind.API_ERROR, message, status_code=response.status_code)

        if not isinstance(data, dict) or "text" not in data:
            return GatewayFailure(FailureKind.INVALID_RESPONSE, "Invalid response format")

        return TranscriptionSuccess(text=str(data["text"]))
