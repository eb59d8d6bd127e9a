"""
בדיקות AI Orchestrator - תשובה פשוטה, לולאת tool calls, audit ומסלולי כשל
"""
import json
from unittest.mock import AsyncMock, patch

import pytest

from chatbot.db.models.conversation import PlatformType
from chatbot.db.models.message import SenderType
from chatbot.domain.services.ai_gateway.results import FailureKind
from chatbot.domain.services.ai_orchestrator import (
    BUDGET_EXCEEDED_RESPONSE,
    ERROR_RESPONSES,
    GREETING_RESPONSE,
    MAX_TOOL_ITERATIONS,
    format_function_call_audit,
    parse_tool_arguments,
)
from tests.conftest import COMPLETIONS_PATH, TOKEN_PATH, completion_body, respond, tool_call

WEBHOOK_URL = "https://n8n.example.com/webhook/chatbot"
WEBHOOK_PATH = "/webhook/chatbot"

TOOL_SETTINGS = json.dumps({
    "enabled": True,
    "webhook_url": WEBHOOK_URL,
    "actions": [{
        "name": "book_appointment",
        "description": "Book an appointment",
        "parameters": [{"name": "date", "type": "string", "required": True}],
    }],
})


@pytest.fixture
def orchestrator(container):
    return container.orchestrator


async def start_conversation(container, config=None, visitor_name="Dana", text="hello"):
    conversation = await container.conversations.create(
        visitor_name=visitor_name,
        config_id=config.id if config else None,
        config_name=config.name if config else None,
        platform_chat_id="session-1",
        platform_type=PlatformType.EMBED,
    )
    await container.messages.add(conversation.id, SenderType.USER, text)
    return conversation


def request_messages(request) -> list[dict]:
    return json.loads(request.content)["messages"]


class TestSimpleReply:

    @pytest.mark.unit
    async def test_reply_from_model(self, connected, orchestrator, gateway_http):
        gateway_http.add(COMPLETIONS_PATH, respond(200, completion_body("Hi Dana!")))
        conversation = await start_conversation(connected)

        reply = await orchestrator.generate_response(conversation.id, "hello")

        assert reply == "Hi Dana!"
        messages = request_messages(gateway_http.calls(COMPLETIONS_PATH)[0])
        assert messages[0]["role"] == "system"
        assert 'use the name "Dana"' in messages[0]["content"]
        # הודעת המשתמש כבר בהיסטוריה, לא נוספת פעמיים
        assert messages[1:] == [{"role": "user", "content": "hello"}]

    @pytest.mark.unit
    async def test_no_tools_without_settings(self, connected, orchestrator, gateway_http, config_factory):
        gateway_http.add(COMPLETIONS_PATH, respond(200, completion_body("ok")))
        config = await config_factory(system_prompt="You sell bicycles.")
        conversation = await start_conversation(connected, config)

        await orchestrator.generate_response(conversation.id, "hello", config)

        body = json.loads(gateway_http.calls(COMPLETIONS_PATH)[0].content)
        assert "tools" not in body

    @pytest.mark.unit
    async def test_history_skips_function_audits(self, connected, orchestrator):
        conversation = await start_conversation(connected, text="first")
        await connected.messages.add(conversation.id, SenderType.AI, "answer")
        await connected.messages.add(conversation.id, SenderType.FUNCTION, "🔧 Function Call: x")
        await connected.messages.add(conversation.id, SenderType.USER, "second")

        messages = await orchestrator.build_messages(conversation.id, "second", None)

        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert messages[-1]["content"] == "second"

    @pytest.mark.unit
    async def test_model_settings_from_config_store(self, connected, orchestrator, gateway_http):
        gateway_http.add(COMPLETIONS_PATH, respond(200, completion_body("ok")))
        await connected.config_store.set("ai_model", "gpt-4o")
        await connected.config_store.set("ai_max_tokens", 256)
        conversation = await start_conversation(connected)

        await orchestrator.generate_response(conversation.id, "hello")

        body = json.loads(gateway_http.calls(COMPLETIONS_PATH)[0].content)
        assert body["model"] == "gpt-4o"
        assert body["max_tokens"] == 256


class TestToolLoop:

    @pytest.mark.unit
    async def test_tool_call_then_final_answer(
        self, connected, orchestrator, gateway_http, webhook_http, config_factory
    ):
        """המודל מבקש כלי, ה-webhook מאשר, והתשובה הסופית מגיעה מהמודל"""
        config = await config_factory(system_prompt="Book things.", n8n_settings=TOOL_SETTINGS)
        gateway_http.add(
            COMPLETIONS_PATH,
            respond(200, completion_body(None, tool_calls=[
                tool_call("book_appointment", '{"date": "24/12/2024"}')
            ])),
            respond(200, completion_body("Your appointment is booked for 24/12/2024.")),
        )
        webhook_http.add(WEBHOOK_PATH, respond(200, {"result": "booked"}))
        conversation = await start_conversation(connected, config, text="book me tomorrow")

        reply = await orchestrator.generate_response(conversation.id, "book me tomorrow", config)

        assert reply == "Your appointment is booked for 24/12/2024."

        first_body = json.loads(gateway_http.calls(COMPLETIONS_PATH)[0].content)
        assert first_body["tools"][0]["function"]["name"] == "book_appointment"

        second = request_messages(gateway_http.calls(COMPLETIONS_PATH)[1])
        assert second[-2]["role"] == "assistant"
        assert second[-2]["tool_calls"][0]["id"] == "call_1"
        assert second[-1]["role"] == "tool"
        assert second[-1]["tool_call_id"] == "call_1"
        assert json.loads(second[-1]["content"])["message"] == "booked"

        webhook_payload = json.loads(webhook_http.calls(WEBHOOK_PATH)[0].content)
        assert webhook_payload["params"] == {"date": "24/12/2024"}
        assert webhook_payload["context"]["conversation_id"] == conversation.id

        history = await connected.messages.list_for_conversation(conversation.id)
        audits = [m for m in history if m.sender_type == SenderType.FUNCTION]
        assert len(audits) == 1
        assert "🔧 Function Call: book_appointment" in audits[0].message
        assert "Status: ✅ SUCCESS" in audits[0].message
        assert "Result: booked" in audits[0].message

    @pytest.mark.unit
    async def test_loop_stops_at_iteration_cap(
        self, connected, orchestrator, gateway_http, webhook_http, config_factory
    ):
        """מודל שמבקש כלים בלי סוף נעצר אחרי 10 סבבים"""
        config = await config_factory(system_prompt="Book things.", n8n_settings=TOOL_SETTINGS)
        gateway_http.add(COMPLETIONS_PATH, respond(200, completion_body(
            "Still working on it", tool_calls=[tool_call("book_appointment", "{}")]
        )))
        webhook_http.add(WEBHOOK_PATH, respond(200, {"result": "ok"}))
        conversation = await start_conversation(connected, config)

        reply = await orchestrator.generate_response(conversation.id, "hello", config)

        assert reply == "Still working on it"
        assert len(webhook_http.calls(WEBHOOK_PATH)) == MAX_TOOL_ITERATIONS
        assert len(gateway_http.calls(COMPLETIONS_PATH)) == MAX_TOOL_ITERATIONS + 1

    @pytest.mark.unit
    async def test_failed_tool_reported_to_model(
        self, connected, orchestrator, gateway_http, webhook_http, config_factory
    ):
        config = await config_factory(system_prompt="Book things.", n8n_settings=TOOL_SETTINGS)
        gateway_http.add(
            COMPLETIONS_PATH,
            respond(200, completion_body(None, tool_calls=[tool_call("book_appointment", "{}")])),
            respond(200, completion_body("Sorry, booking is unavailable right now.")),
        )
        webhook_http.add(WEBHOOK_PATH, respond(500, content=b"workflow crashed"))
        conversation = await start_conversation(connected, config)

        reply = await orchestrator.generate_response(conversation.id, "book", config)

        assert reply == "Sorry, booking is unavailable right now."
        tool_message = request_messages(gateway_http.calls(COMPLETIONS_PATH)[1])[-1]
        assert json.loads(tool_message["content"]) == {"error": "n8n returned error 500: workflow crashed"}

        history = await connected.messages.list_for_conversation(conversation.id)
        audit = next(m for m in history if m.sender_type == SenderType.FUNCTION)
        assert "Status: ❌ FAILED" in audit.message

    @pytest.mark.unit
    async def test_undeclared_action(self, connected, orchestrator, gateway_http, webhook_http, config_factory):
        config = await config_factory(system_prompt="Book things.", n8n_settings=TOOL_SETTINGS)
        gateway_http.add(
            COMPLETIONS_PATH,
            respond(200, completion_body(None, tool_calls=[tool_call("drop_tables", "{}")])),
            respond(200, completion_body("I can't do that.")),
        )
        conversation = await start_conversation(connected, config)

        reply = await orchestrator.generate_response(conversation.id, "hello", config)

        assert reply == "I can't do that."
        assert webhook_http.requests == []


class TestFailures:

    @pytest.mark.unit
    async def test_not_connected_uses_default_response(self, container, orchestrator, gateway_http):
        conversation = await start_conversation(container)

        reply = await orchestrator.generate_response(conversation.id, "hello there")

        assert reply == GREETING_RESPONSE
        assert gateway_http.requests == []

    @pytest.mark.unit
    async def test_budget_exceeded(self, connected, orchestrator, gateway_http):
        gateway_http.add(COMPLETIONS_PATH, respond(402, {
            "error": {"type": "rate_limit", "message": "insufficient balance"},
        }))
        conversation = await start_conversation(connected)

        reply = await orchestrator.generate_response(conversation.id, "hello")

        assert reply == BUDGET_EXCEEDED_RESPONSE

    @pytest.mark.unit
    async def test_gateway_error_gives_apology(self, connected, orchestrator, gateway_http):
        gateway_http.add(COMPLETIONS_PATH, respond(500, {"error": {"message": "down"}}))
        conversation = await start_conversation(connected)

        reply = await orchestrator.generate_response(conversation.id, "hello")

        assert reply in ERROR_RESPONSES

    @pytest.mark.unit
    async def test_empty_content_gives_apology(self, connected, orchestrator, gateway_http):
        gateway_http.add(COMPLETIONS_PATH, respond(200, completion_body("")))
        conversation = await start_conversation(connected)

        reply = await orchestrator.generate_response(conversation.id, "hello")

        assert reply in ERROR_RESPONSES

    @pytest.mark.unit
    async def test_broken_token_response_falls_back_to_default(self, container, orchestrator, gateway_http):
        """רענון עם expires_in שבור - תשובת ברירת מחדל ולא חריגה"""
        await container.token_manager.store_tokens("old-access", "refresh-1", 100)
        gateway_http.add(TOKEN_PATH, respond(200, {"access_token": "new", "expires_in": "soon"}))
        conversation = await start_conversation(container)

        reply = await orchestrator.generate_response(conversation.id, "hello there")

        assert reply == GREETING_RESPONSE
        assert gateway_http.calls(COMPLETIONS_PATH) == []

    @pytest.mark.unit
    async def test_connection_check_error_gives_apology(self, container, orchestrator):
        conversation = await start_conversation(container)

        with patch.object(
            container.ai_client, "is_connected", AsyncMock(side_effect=ConnectionError("redis down"))
        ):
            reply = await orchestrator.generate_response(conversation.id, "hello")

        assert reply in ERROR_RESPONSES

    @pytest.mark.unit
    async def test_malformed_tool_settings_do_not_break_reply(
        self, connected, orchestrator, gateway_http, config_factory
    ):
        broken = json.dumps({
            "enabled": True,
            "webhook_url": WEBHOOK_URL,
            "actions": [{"name": "lookup", "parameters": [{"name": "q", "type": ["string"]}]}],
        })
        config = await config_factory(n8n_settings=broken)
        gateway_http.add(COMPLETIONS_PATH, respond(200, completion_body("ok")))
        conversation = await start_conversation(connected, config)

        reply = await orchestrator.generate_response(conversation.id, "hello", config)

        assert reply == "ok"
        body = json.loads(gateway_http.calls(COMPLETIONS_PATH)[0].content)
        assert body["tools"][0]["function"]["parameters"]["properties"]["q"]["type"] == "string"

    @pytest.mark.unit
    @pytest.mark.parametrize("message, expected_start", [
        ("can you help me", "I can help answer questions"),
        ("thank you", "You're welcome"),
        ("bye now", "Goodbye"),
    ])
    def test_default_response_keywords(self, orchestrator, message, expected_start):
        assert orchestrator.get_default_response(message).startswith(expected_start)


class TestAudit:

    @pytest.mark.unit
    def test_long_result_truncated(self):
        audit = format_function_call_audit("lookup", {"q": "x"}, {"message": "a" * 600}, False)

        result_line = audit.split("Result: ", 1)[1]
        assert result_line == "a" * 500 + "..."

    @pytest.mark.unit
    def test_structured_result_pretty_printed(self):
        audit = format_function_call_audit("lookup", {}, {"slots": ["10:00"]}, False)

        assert 'Result: {\n    "slots": [' in audit

    @pytest.mark.unit
    def test_arguments_keep_unicode(self):
        audit = format_function_call_audit("book", {"name": "דנה"}, "ok", False)

        assert 'Arguments: {"name": "דנה"}' in audit

    @pytest.mark.unit
    @pytest.mark.parametrize("raw, expected", [
        ('{"date": "24/12/2024"}', {"date": "24/12/2024"}),
        ({"already": "dict"}, {"already": "dict"}),
        ("", {}),
        ("not json", {}),
        ("[1, 2]", {}),
    ])
    def test_parse_tool_arguments(self, raw, expected):
        assert parse_tool_arguments(raw) == expected


class TestStandaloneCompletions:

    @pytest.mark.unit
    async def test_improve_persona_requires_text(self, connected, orchestrator, gateway_http):
        result = await orchestrator.improve_persona("   ")

        assert result.kind == FailureKind.INVALID_INPUT
        assert gateway_http.requests == []

    @pytest.mark.unit
    async def test_improve_persona_empty_answer(self, connected, orchestrator, gateway_http):
        gateway_http.add(COMPLETIONS_PATH, respond(200, completion_body("  ")))

        result = await orchestrator.improve_persona("Friendly and short.")

        assert result.kind == FailureKind.INVALID_RESPONSE

    @pytest.mark.unit
    async def test_improve_persona(self, connected, orchestrator, gateway_http):
        gateway_http.add(COMPLETIONS_PATH, respond(200, completion_body("Improved persona")))

        result = await orchestrator.improve_persona("Friendly and short.")

        assert result.content == "Improved persona"
        body = json.loads(gateway_http.calls(COMPLETIONS_PATH)[0].content)
        assert body["temperature"] == 0.5
        assert body["messages"][1]["content"].endswith("Friendly and short.")
