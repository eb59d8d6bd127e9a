"""
Tagged results of LLM gateway operations.

פעולות ה-gateway לא זורקות חריגות: כל קריאה מחזירה Success או GatewayFailure,
והקורא מחליט איך להציג את הכשל למשתמש.
"""
import enum
from dataclasses import dataclass, field
from typing import Any


class FailureKind(str, enum.Enum):
    AUTHENTICATION = "authentication"  # 401 שנשאר גם אחרי רענון
    REAUTHORIZATION_REQUIRED = "reauthorization_required"  # refresh token נדחה (400/401)
    BUDGET_EXCEEDED = "budget_exceeded"
    API_ERROR = "api_error"
    TRANSPORT = "transport"  # רשת / timeout
    INVALID_RESPONSE = "invalid_response"
    NOT_CONNECTED = "not_connected"
    INVALID_INPUT = "invalid_input"


@dataclass(frozen=True)
class GatewayFailure:
    kind: FailureKind
    message: str
    status_code: int | None = None

    success = False

    @property
    def is_budget_exceeded(self) -> bool:
        return self.kind == FailureKind.BUDGET_EXCEEDED


@dataclass(frozen=True)
class CompletionSuccess:
    content: str | None
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    model: str | None = None

    success = True

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass(frozen=True)
class ModelListSuccess:
    models: list[Any]

    success = True


@dataclass(frozen=True)
class UsageSummarySuccess:
    data: dict[str, Any]

    success = True


@dataclass(frozen=True)
class SpeechSuccess:
    audio_base64: str
    content_type: str = "audio/mpeg"

    success = True


@dataclass(frozen=True)
class TranscriptionSuccess:
    text: str

    success = True


@dataclass(frozen=True)
class RefreshResult:
    """תוצאת רענון טוקן. ``network_call`` אומר אם בפועל נשלחה בקשה לספק."""

    success: bool
    failure: GatewayFailure | None = None
    network_call: bool = False

    @classmethod
    def ok(cls, network_call: bool) -> "RefreshResult":
        return cls(success=True, network_call=network_call)

    @classmethod
    def failed(
        cls,
        kind: FailureKind,
        message: str,
        status_code: int | None = None,
        network_call: bool = True,
    ) -> "RefreshResult":
        return cls(
            success=False,
            failure=GatewayFailure(kind=kind, message=message, status_code=status_code),
            network_call=network_call,
        )

    @property
    def error(self) -> str:
        return self.failure.message if self.failure else ""


CompletionResult = CompletionSuccess | GatewayFailure
ModelListResult = ModelListSuccess | GatewayFailure
UsageSummaryResult = UsageSummarySuccess | GatewayFailure
SpeechResult = SpeechSuccess | GatewayFailure
TranscriptionResult = TranscriptionSuccess | GatewayFailure
