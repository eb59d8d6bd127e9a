"""
מיפוי תוצאות שירות (MessageResponse / GatewayFailure) לחריגות HTTP.

ה-routes זורקים AppException וה-handler ב-core.middleware בונה את מעטפת השגיאה.
"""
from chatbot.core.exceptions import (
    AIGatewayError,
    AppException,
    ConversationEndedError,
    ConversationNotFoundError,
    ErrorCode,
    RateLimitExceededError,
    ValidationException,
)
from chatbot.domain.services.ai_gateway.results import FailureKind, GatewayFailure
from chatbot.domain.services.message_pipeline import MessageResponse
from chatbot.domain.services.message_pipeline.context import (
    CONVERSATION_ENDED,
    CONVERSATION_NOT_FOUND,
    RATE_LIMITED,
    VALIDATION_ERROR,
)

_FAILURE_CODES = {
    FailureKind.NOT_CONNECTED: ErrorCode.AI_NOT_CONNECTED,
    FailureKind.REAUTHORIZATION_REQUIRED: ErrorCode.AI_NOT_CONNECTED,
    FailureKind.BUDGET_EXCEEDED: ErrorCode.AI_BUDGET_EXCEEDED,
}


def raise_for_pipeline_failure(response: MessageResponse) -> None:
    if response.success:
        return

    message = response.error or "Request failed"
    if response.error_type == RATE_LIMITED:
        raise RateLimitExceededError(message, response.metadata.get("reason", RATE_LIMITED))
    if response.error_type == VALIDATION_ERROR:
        raise ValidationException(message, field=response.metadata.get("field"))
    if response.error_type == CONVERSATION_ENDED:
        raise ConversationEndedError(response.conversation_id, response.metadata.get("status", ""))
    if response.error_type == CONVERSATION_NOT_FOUND:
        raise ConversationNotFoundError(response.conversation_id)
    raise AppException(
        message,
        details={"error_type": response.error_type, "conversation_id": response.conversation_id},
    )


def raise_for_gateway_failure(failure: GatewayFailure) -> None:
    """INVALID_INPUT הופך ל-400; כל השאר ל-503 עם קוד לפי סוג הכשל"""
    if failure.kind == FailureKind.INVALID_INPUT:
        raise ValidationException(failure.message)
    raise AIGatewayError(
        failure.message,
        error_code=_FAILURE_CODES.get(failure.kind, ErrorCode.AI_GATEWAY_ERROR),
        details={"failure_kind": failure.kind.value},
    )
