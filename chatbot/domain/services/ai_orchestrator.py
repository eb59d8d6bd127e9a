"""
AI Orchestrator - from conversation history to a final assistant reply.

זרימה: בניית system prompt, טעינת 10 ההודעות האחרונות, קריאה ל-completion,
ולולאת tool calls (עד 10 סבבים) מול ה-Tool Gateway. כל מסלול כשל נגמר
במחרוזת: תשובת ברירת מחדל כשאין חיבור, הודעת יתרה נמוכה, או התנצלות כללית.
"""
import json
import random
from dataclasses import dataclass
from typing import Any

from chatbot.core.config import settings
from chatbot.core.exceptions import ToolExecutionError
from chatbot.core.logging import get_logger
from chatbot.db.models.chatbot_configuration import ChatbotConfiguration
from chatbot.db.models.message import SenderType
from chatbot.domain.repositories.conversation_repository import ConversationRepository
from chatbot.domain.repositories.message_repository import MessageRepository
from chatbot.domain.services.ai_gateway.client import AIGatewayClient, NOT_CONNECTED_MESSAGE
from chatbot.domain.services.ai_gateway.results import (
    CompletionResult,
    CompletionSuccess,
    FailureKind,
    GatewayFailure,
)
from chatbot.domain.services.prompt_builder import PromptBuilder
from chatbot.domain.services.tool_gateway import ToolGateway
from chatbot.domain.stores.config_store import ConfigStore

logger = get_logger(__name__)

MAX_TOOL_ITERATIONS = 10
HISTORY_LIMIT = 10
AUDIT_RESULT_MAX_CHARS = 500

BUDGET_EXCEEDED_RESPONSE = (
    "I'm sorry, but the AI service balance is too low. Please contact the site administrator."
)

GREETING_RESPONSE = "Hello! How can I help you today?"
HELP_RESPONSE = (
    "I can help answer questions about our products, services, or website. "
    "What would you like to know?"
)
THANKS_RESPONSE = "You're welcome! Is there anything else I can help with?"
GOODBYE_RESPONSE = "Goodbye! Have a great day!"

FILLER_RESPONSES = (
    "I'm not sure I understand. Could you please rephrase that?",
    "Interesting question! Let me think about that.",
    "I don't have that information yet, but I'm learning!",
    "Could you provide more details about your question?",
    "That's a good question. Let me find the answer for you.",
)

ERROR_RESPONSES = (
    "I apologize, but I'm having trouble connecting right now. Please try again in a moment.",
    "I seem to be experiencing a technical issue. Could you please try again?",
    "I'm sorry, but I couldn't process your request. Let's try again.",
    "There appears to be a temporary connection issue. Please try again shortly.",
)

PERSONA_IMPROVEMENT_PROMPT = """You are a helpful AI assistant that specializes in improving and refining personality and tone instructions for AI chatbots. Your goal is to enhance the provided persona description to be more specific, comprehensive, and effective for guiding a chatbot's tone and communication style. The chatbot will have a separate knowledge base, so focus only on improving the personality, tone, and communication style aspects. Make the improved persona professional, clear, and well-structured. Focus on:
1. More specific details about the chatbot's personality traits
2. Clear guidance on tone and communication style
3. Specific instructions on how to handle different types of questions
4. Guidelines for empathetic and helpful customer service
5. Well-structured presentation with clear sections
6. Instructions to reference a knowledge base for factual information
Your output should be the complete improved persona only, without explanations or meta-commentary.

IMPORTANT: You MUST provide a detailed response. Do not return an empty response under any circumstances."""

PERSONA_IMPROVEMENT_REQUEST = (
    "Please improve this chatbot persona description. "
    "Remember this only focuses on personality and tone, not knowledge:\n\n"
)


@dataclass(frozen=True)
class ModelSettings:
    model: str
    max_tokens: int
    temperature: float


def format_function_call_audit(
    function_name: str,
    arguments: Any,
    result: Any,
    is_error: bool,
) -> str:
    """
    הודעת audit של קריאת כלי לשמירה בשיחה (sender_type=function).
    תוצאה עם message שטוח מוצגת כמו שהיא, אחרת JSON מעוצב. חיתוך ל-500 תווים.
    """
    if is_error:
        display = str(result)
    elif isinstance(result, dict) and isinstance(result.get("message"), str):
        display = result["message"]
    elif isinstance(result, (dict, list)):
        display = json.dumps(result, indent=4, ensure_ascii=False)
    else:
        display = str(result)

    if len(display) > AUDIT_RESULT_MAX_CHARS:
        display = display[:AUDIT_RESULT_MAX_CHARS] + "..."

    status = "❌ FAILED" if is_error else "✅ SUCCESS"
    return (
        f"🔧 Function Call: {function_name}\n"
        f"Status: {status}\n"
        f"Arguments: {json.dumps(arguments, ensure_ascii=False)}\n"
        f"Result: {display}"
    )


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Tool call arguments are not valid JSON", extra_data={"arguments": str(raw)[:200]})
        return {}
    return parsed if isinstance(parsed, dict) else {}


class AIOrchestrator:
    """Drives prompt building, completion calls and the tool-call loop"""

    def __init__(
        self,
        client: AIGatewayClient,
        tool_gateway: ToolGateway,
        conversations: ConversationRepository,
        messages: MessageRepository,
        prompt_builder: PromptBuilder,
        config_store: ConfigStore,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._tools = tool_gateway
        self._conversations = conversations
        self._messages = messages
        self._prompts = prompt_builder
        self._config_store = config_store
        self._rng = rng or random.Random()

    async def get_model_settings(self) -> ModelSettings:
        return ModelSettings(
            model=await self._config_store.get("ai_model", settings.AI_MODEL) or settings.AI_MODEL,
            max_tokens=await self._config_store.get_int("ai_max_tokens", settings.AI_MAX_TOKENS),
            temperature=await self._config_store.get_float("ai_temperature", settings.AI_TEMPERATURE),
        )

    # ==================== Canned responses ====================

    def get_default_response(self, message: str) -> str:
        """תשובה לפי מילות מפתח, כשה-gateway לא מחובר"""
        text = (message or "").lower()
        if "hello" in text or "hi" in text:
            return GREETING_RESPONSE
        if "help" in text:
            return HELP_RESPONSE
        if "thank" in text:
            return THANKS_RESPONSE
        if "bye" in text:
            return GOODBYE_RESPONSE
        return self._rng.choice(FILLER_RESPONSES)

    def get_error_response(self) -> str:
        return self._rng.choice(ERROR_RESPONSES)

    # ==================== Conversation context ====================

    async def build_messages(
        self,
        conversation_id: int,
        latest_message: str,
        config: ChatbotConfiguration | None,
    ) -> list[dict[str, Any]]:
        conversation = await self._conversations.get(conversation_id)
        visitor_name = conversation.visitor_name if conversation else None
        system_prompt = await self._prompts.build(config, visitor_name)

        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for message in await self._messages.get_recent(conversation_id, limit=HISTORY_LIMIT):
            role = "user" if message.sender_type == SenderType.USER else "assistant"
            messages.append({"role": role, "content": message.message})

        if latest_message:
            last = messages[-1]
            if last["role"] != "user" or (last["content"] or "").strip() != latest_message.strip():
                messages.append({"role": "user", "content": latest_message})
        return messages

    # ==================== Tool calls ====================

    async def _execute_tool_call(
        self,
        tool_call: dict[str, Any],
        conversation_id: int,
        config: ChatbotConfiguration | None,
    ) -> dict[str, Any]:
        function = tool_call.get("function") or {}
        function_name = function.get("name") or ""
        arguments = parse_tool_arguments(function.get("arguments"))

        logger.info(
            "Executing tool call",
            extra_data={"conversation_id": conversation_id, "function": function_name},
        )
        try:
            result = await self._tools.execute(
                config, function_name, arguments, {"conversation_id": conversation_id}
            )
        except ToolExecutionError as exc:
            logger.warning(
                "Tool call failed",
                extra_data={
                    "conversation_id": conversation_id,
                    "function": function_name,
                    "error_type": exc.error_type,
                    "error": exc.message,
                },
            )
            is_error = True
            audit_result = exc.message
            content = json.dumps({"error": exc.message}, ensure_ascii=False)
        else:
            is_error = False
            audit_result = result
            content = json.dumps(result, ensure_ascii=False)

        await self._messages.add(
            conversation_id,
            SenderType.FUNCTION,
            format_function_call_audit(function_name, arguments, audit_result, is_error),
        )
        return {"role": "tool", "tool_call_id": tool_call.get("id"), "content": content}

    async def _run_completion_loop(
        self,
        conversation_id: int,
        messages: list[dict[str, Any]],
        config: ChatbotConfiguration | None,
        tools: list[dict[str, Any]] | None,
        model_settings: ModelSettings,
    ) -> CompletionResult:
        async def complete() -> CompletionResult:
            return await self._client.generate_completion(
                messages,
                model=model_settings.model,
                max_tokens=model_settings.max_tokens,
                temperature=model_settings.temperature,
                tools=tools,
            )

        result = await complete()
        iteration = 0
        while isinstance(result, CompletionSuccess) and result.has_tool_calls:
            if iteration >= MAX_TOOL_ITERATIONS:
                logger.warning(
                    "Tool call iteration cap reached",
                    extra_data={"conversation_id": conversation_id, "iterations": iteration},
                )
                break
            iteration += 1
            logger.info(
                f"Processing tool calls (iteration {iteration})",
                extra_data={"conversation_id": conversation_id, "tool_count": len(result.tool_calls)},
            )

            messages.append({
                "role": "assistant",
                "content": result.content,
                "tool_calls": result.tool_calls,
            })
            # סבבים סדרתיים: כל סבב תלוי בתוצאות הכלים של הקודם
            for tool_call in result.tool_calls:
                messages.append(await self._execute_tool_call(tool_call, conversation_id, config))

            result = await complete()
        return result

    async def generate_response(
        self,
        conversation_id: int,
        latest_message: str = "",
        config: ChatbotConfiguration | None = None,
    ) -> str:
        """
        מחזיר תמיד מחרוזת. לא זורק חריגות לקורא.
        """
        try:
            tools = None
            if config is not None and self._tools.is_enabled_for(config):
                tools = self._tools.build_function_schemas(config)

            model_settings = await self.get_model_settings()
            connected = await self._client.is_connected()

            logger.info(
                "Generating AI response",
                extra_data={
                    "conversation_id": conversation_id,
                    "connected": connected,
                    "model": model_settings.model,
                    "tools_enabled": bool(tools),
                },
            )

            if not connected:
                logger.error(
                    f"{NOT_CONNECTED_MESSAGE}, using default response",
                    extra_data={"conversation_id": conversation_id},
                )
                return self.get_default_response(latest_message)

            messages = await self.build_messages(conversation_id, latest_message, config)
            result = await self._run_completion_loop(
                conversation_id, messages, config, tools, model_settings
            )
        except Exception as e:
            logger.error(
                "Unexpected error while generating response",
                extra_data={"conversation_id": conversation_id, "error": str(e)},
                exc_info=True,
            )
            return self.get_error_response()

        if isinstance(result, GatewayFailure):
            logger.error(
                f"AI gateway error: {result.message}",
                extra_data={"conversation_id": conversation_id, "failure_kind": result.kind.value},
            )
            if result.is_budget_exceeded:
                return BUDGET_EXCEEDED_RESPONSE
            return self.get_error_response()

        logger.info(
            "AI response generated",
            extra_data={
                "conversation_id": conversation_id,
                "model": result.model or model_settings.model,
                "usage": result.usage,
            },
        )
        if not result.content:
            return self.get_error_response()
        return result.content

    # ==================== Standalone completions ====================

    async def get_completion(self, system_prompt: str, user_prompt: str) -> CompletionResult:
        """completion בלי הקשר שיחה (סיכומים, כלי ניהול)"""
        model_settings = await self.get_model_settings()
        return await self._client.generate_completion(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            model=model_settings.model,
            max_tokens=max(model_settings.max_tokens, 4000),
            temperature=model_settings.temperature,
        )

    async def improve_persona(self, persona: str) -> CompletionResult:
        if not persona or not persona.strip():
            return GatewayFailure(FailureKind.INVALID_INPUT, "No persona provided.")

        model_settings = await self.get_model_settings()
        result = await self._client.generate_completion(
            [
                {"role": "system", "content": PERSONA_IMPROVEMENT_PROMPT},
                {"role": "user", "content": PERSONA_IMPROVEMENT_REQUEST + persona},
            ],
            model=model_settings.model,
            max_tokens=max(model_settings.max_tokens, 1000),
            temperature=0.5,
        )
        if isinstance(result, CompletionSuccess) and not (result.content or "").strip():
            return GatewayFailure(
                FailureKind.INVALID_RESPONSE,
                "The API returned an empty response. Please try again.",
            )
        return result
