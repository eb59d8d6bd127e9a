"""
Admin Endpoints - ניהול חיבור ה-gateway, כלים, ומונים, ללא גישה ישירה ל-DB/Redis.

כל ה-endpoints מוגנים ב-X-Admin-API-Key:
1. סטטוס / חיבור / ניתוק של טוקני ה-gateway
2. רשימת מודלים וסיכום שימוש
3. בדיקת חיבור ל-webhook של הכלים
4. שיפור persona ו-completion חופשי
5. איפוס rate limits והרצה ידנית של ניקוי נתונים
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from chatbot.api.dependencies.admin_auth import require_admin_api_key
from chatbot.api.errors import raise_for_gateway_failure
from chatbot.container import Container, get_container
from chatbot.core.exceptions import ErrorCode, NotFoundException, ToolExecutionError
from chatbot.core.logging import get_logger
from chatbot.domain.services.ai_gateway.results import GatewayFailure

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


# ─── Pydantic models ────────────────────────────────────────────────────────

class ConnectRequest(BaseModel):
    """טוקנים שהתקבלו מהרשאה שבוצעה מחוץ לשירות"""
    access_token: str = Field(min_length=1)
    refresh_token: str = ""
    expires_in: Optional[int] = Field(default=None, ge=1)


class GatewayStatusResponse(BaseModel):
    connected: bool
    has_access_token: bool
    has_refresh_token: bool
    expires_at: Optional[int] = None
    expires_in_seconds: Optional[int] = None
    expiring: bool


class WebhookHeader(BaseModel):
    name: str
    value: str = ""


class ToolTestRequest(BaseModel):
    """בדיקה לפי קונפיגורציה שמורה, או לפי URL ישיר"""
    config_id: Optional[int] = None
    webhook_url: str = ""
    webhook_secret: str = ""
    headers: list[WebhookHeader] = Field(default_factory=list)


class ToolTestResponse(BaseModel):
    success: bool
    message: str
    error_type: Optional[str] = None


class PersonaRequest(BaseModel):
    persona: str = ""


class CompletionRequest(BaseModel):
    system_prompt: str = ""
    user_prompt: str = Field(min_length=1)


class RetentionRequest(BaseModel):
    days: Optional[int] = Field(default=None, ge=1)


# ─── Gateway connection ─────────────────────────────────────────────────────

@router.get("/gateway/status", response_model=GatewayStatusResponse)
async def get_gateway_status(
    container: Container = Depends(get_container),
) -> GatewayStatusResponse:
    status = await container.token_manager.status()
    connected = await container.token_manager.is_connected()
    return GatewayStatusResponse(connected=connected, **status)


@router.post("/gateway/connect")
async def connect_gateway(
    data: ConnectRequest,
    container: Container = Depends(get_container),
) -> dict:
    await container.token_manager.store_tokens(
        data.access_token, data.refresh_token, data.expires_in
    )
    logger.info("Gateway connected by admin")
    return {"success": True, "connected": await container.token_manager.is_connected()}


@router.post("/gateway/disconnect")
async def disconnect_gateway(
    container: Container = Depends(get_container),
) -> dict:
    await container.token_manager.clear_tokens()
    logger.info("Gateway disconnected by admin")
    return {"success": True, "connected": False}


@router.get("/gateway/models")
async def list_models(
    container: Container = Depends(get_container),
) -> dict:
    result = await container.ai_client.list_models()
    if isinstance(result, GatewayFailure):
        raise_for_gateway_failure(result)
    return {"success": True, "models": result.models}


@router.get("/gateway/usage")
async def get_usage_summary(
    container: Container = Depends(get_container),
) -> dict:
    result = await container.ai_client.get_usage_summary()
    if isinstance(result, GatewayFailure):
        raise_for_gateway_failure(result)
    return {"success": True, "data": result.data}


# ─── Tools ──────────────────────────────────────────────────────────────────

@router.post("/tools/test", response_model=ToolTestResponse)
async def test_tool_webhook(
    data: ToolTestRequest,
    container: Container = Depends(get_container),
) -> ToolTestResponse:
    """
    כשל בבדיקה מוחזר בגוף התשובה (success=False) ולא כשגיאת HTTP,
    כדי שהמפעיל יראה את סוג הכשל.
    """
    webhook_url = data.webhook_url
    secret = data.webhook_secret
    headers: list[dict[str, Any]] = [h.model_dump() for h in data.headers]

    if data.config_id is not None:
        config = await container.configurations.get(data.config_id)
        if config is None:
            raise NotFoundException(
                "Configuration", data.config_id, error_code=ErrorCode.CONFIGURATION_NOT_FOUND
            )
        tool_settings = container.tool_gateway.settings_for(config)
        webhook_url = webhook_url or tool_settings.webhook_url
        secret = secret or tool_settings.webhook_secret
        headers = headers or list(tool_settings.headers)

    try:
        await container.tool_gateway.test_connection(webhook_url, secret=secret, headers=headers)
    except ToolExecutionError as exc:
        logger.warning(
            "Tool webhook test failed",
            extra_data={"error_type": exc.error_type, "error": exc.message},
        )
        return ToolTestResponse(success=False, message=exc.message, error_type=exc.error_type)

    return ToolTestResponse(success=True, message="Connection successful")


# ─── Completions ────────────────────────────────────────────────────────────

@router.post("/persona/improve")
async def improve_persona(
    data: PersonaRequest,
    container: Container = Depends(get_container),
) -> dict:
    result = await container.orchestrator.improve_persona(data.persona)
    if isinstance(result, GatewayFailure):
        raise_for_gateway_failure(result)
    return {"success": True, "persona": result.content.strip()}


@router.post("/completion")
async def create_completion(
    data: CompletionRequest,
    container: Container = Depends(get_container),
) -> dict:
    result = await container.orchestrator.get_completion(data.system_prompt, data.user_prompt)
    if isinstance(result, GatewayFailure):
        raise_for_gateway_failure(result)
    return {"success": True, "content": result.content or "", "usage": result.usage}


# ─── Maintenance ────────────────────────────────────────────────────────────

@router.post("/rate-limits/reset")
async def reset_rate_limits(
    container: Container = Depends(get_container),
) -> dict:
    deleted = await container.rate_limiter.reset_all()
    return {"success": True, "deleted_keys": deleted}


@router.post("/retention/run")
async def run_retention(
    data: RetentionRequest | None = None,
    container: Container = Depends(get_container),
) -> dict:
    return await container.retention.cleanup(data.days if data else None)
