"""
Custom Exception Hierarchy

Exceptions cover the HTTP surface and the tool webhook. Gateway operations
do not raise; they return tagged results (see ai_gateway.results), and
AIGatewayError exists only to carry a gateway failure through logs.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Conversation errors (2xxx)
    CONVERSATION_NOT_FOUND = "ERR_2001"
    CONVERSATION_ENDED = "ERR_2002"
    CONFIGURATION_NOT_FOUND = "ERR_2003"

    # LLM gateway errors (3xxx)
    AI_GATEWAY_ERROR = "ERR_3001"
    AI_NOT_CONNECTED = "ERR_3002"
    AI_BUDGET_EXCEEDED = "ERR_3003"

    # Tool webhook errors (4xxx)
    TOOL_NOT_CONFIGURED = "ERR_4001"
    TOOL_ACTION_NOT_FOUND = "ERR_4002"
    TOOL_HTTP_ERROR = "ERR_4003"
    TOOL_TRANSPORT_ERROR = "ERR_4004"

    # External service errors (5xxx)
    TELEGRAM_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND,
        message: str | None = None
    ):
        super().__init__(
            message=message or f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class UnauthorizedException(AppException):
    """Raised when a caller presents a missing or invalid credential"""

    def __init__(self, message: str = "Unauthorized", status_code: int = 401):
        super().__init__(
            message=message,
            error_code=ErrorCode.UNAUTHORIZED if status_code == 401 else ErrorCode.FORBIDDEN,
            status_code=status_code,
        )


class RateLimitExceededError(AppException):
    """Raised by HTTP surfaces when a rate-limit check denies the request"""

    def __init__(self, message: str, limit_type: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={"limit_type": limit_type}
        )


class ConversationNotFoundError(NotFoundException):
    """Raised when a conversation lookup misses"""

    def __init__(self, identifier: Any):
        super().__init__(
            resource="Conversation",
            identifier=identifier,
            error_code=ErrorCode.CONVERSATION_NOT_FOUND,
            message="Conversation not found",
        )


class ConversationEndedError(AppException):
    """Raised when a message targets a conversation that is no longer active"""

    def __init__(self, conversation_id: int, status: str):
        super().__init__(
            message="This conversation has ended. Please start a new conversation.",
            error_code=ErrorCode.CONVERSATION_ENDED,
            status_code=409,
            details={"conversation_id": conversation_id, "status": status}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class AIGatewayError(ExternalServiceException):
    """LLM gateway failure, built from a GatewayFailure result for logging"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.AI_GATEWAY_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name="ai_gateway",
            message=message,
            error_code=error_code,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "AIGatewayError":
        """
        יצירת AIGatewayError מתוך HTTP response.

        Args:
            operation: שם הפעולה (completion, models, usage, speech...)
            response: אובייקט response (httpx.Response)
            message: הודעת שגיאה מותאמת
            max_response_chars: אורך מקסימלי ל-response_text בלוג
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ToolExecutionError(AppException):
    """Base exception for tool webhook failures.

    ``error_type`` tags the failure in logs and in the admin webhook test
    response (not_configured / action_not_found / http_error / request_failed).
    """

    error_type = "request_failed"

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.TOOL_TRANSPORT_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=502,
            details=details
        )


class ToolNotConfiguredError(ToolExecutionError):
    """Raised when the tool webhook URL is empty or tools are disabled"""

    error_type = "not_configured"

    def __init__(self, message: str = "n8n integration is not configured for this chatbot"):
        super().__init__(message=message, error_code=ErrorCode.TOOL_NOT_CONFIGURED)


class ActionNotFoundError(ToolExecutionError):
    """Raised when the model asks for a function that is not declared"""

    error_type = "action_not_found"

    def __init__(self, action: str):
        super().__init__(
            message=f'Action "{action}" is not configured',
            error_code=ErrorCode.TOOL_ACTION_NOT_FOUND,
            details={"action": action}
        )


class WebhookHttpError(ToolExecutionError):
    """Raised when the webhook answers with a non-2xx status"""

    error_type = "http_error"

    def __init__(self, status_code: int, body: str):
        super().__init__(
            message=f"n8n returned error {status_code}: {body[:500]}",
            error_code=ErrorCode.TOOL_HTTP_ERROR,
            details={"status_code": status_code, "body": body}
        )
        self.http_status = status_code
        self.body = body


class WebhookTransportError(ToolExecutionError):
    """Raised when the webhook request fails before any HTTP status"""

    error_type = "request_failed"

    def __init__(self, message: str):
        super().__init__(message=message, error_code=ErrorCode.TOOL_TRANSPORT_ERROR)


class TelegramError(ExternalServiceException):
    """Raised when Telegram API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="telegram",
            message=f"Telegram API error: {message}",
            error_code=ErrorCode.TELEGRAM_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "TelegramError":
        """
        יצירת TelegramError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: sendMessage)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text (מניעת לוגים גדולים)
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )
