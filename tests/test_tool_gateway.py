"""
בדיקות Tool Gateway - הגדרות n8n, function schemas, חתימת HMAC וחילוץ הודעות
"""
import json

import httpx
import pytest

from chatbot.core.exceptions import (
    ActionNotFoundError,
    ToolNotConfiguredError,
    WebhookHttpError,
    WebhookTransportError,
)
from chatbot.db.models.chatbot_configuration import ChatbotConfiguration
from chatbot.domain.services.tool_gateway import (
    SIGNATURE_HEADER,
    TEST_CONNECTION_ACTION,
    ToolGateway,
    ToolSettings,
    extract_message,
    sign_payload,
)
from tests.conftest import respond

WEBHOOK_URL = "https://n8n.example.com/webhook/chatbot"
WEBHOOK_PATH = "/webhook/chatbot"


def make_settings(**overrides) -> dict:
    settings = {
        "enabled": True,
        "webhook_url": WEBHOOK_URL,
        "webhook_secret": "s3cret",
        "timeout": 30,
        "headers": [{"name": "X-Tenant", "value": "shop-1"}],
        "actions": [
            {
                "name": "book_appointment",
                "description": "Book an appointment",
                "parameters": [
                    {"name": "date", "type": "string", "description": "ISO date", "required": True},
                    {"name": "guests", "type": "integer", "description": "Party size"},
                ],
            },
        ],
    }
    settings.update(overrides)
    return settings


def make_config(**overrides) -> ChatbotConfiguration:
    return ChatbotConfiguration(id=1, name="Shop Bot", n8n_settings=json.dumps(make_settings(**overrides)))


@pytest.fixture
def gateway(webhook_http) -> ToolGateway:
    return ToolGateway(transport=webhook_http.transport)


class TestExtractMessage:
    """חילוץ הודעה שטוחה מתשובות webhook"""

    @pytest.mark.unit
    @pytest.mark.parametrize("response, expected", [
        ("plain text", "plain text"),
        ({"message": "from message"}, "from message"),
        ({"output": "from output"}, "from output"),
        ({"result": "booked"}, "booked"),
        ([{"output": [{"content": [{"text": {"message": "deep"}}]}]}], "deep"),
        ([{"output": [{"content": [{"text": "deep text"}]}]}], "deep text"),
        ([{"message": "first item"}], "first item"),
        ({"output": [{"content": [{"text": {"message": "top nested"}}]}]}, "top nested"),
        ({"status": "ok"}, None),
        ([], None),
        (42, None),
    ])
    def test_extraction_order(self, response, expected):
        assert extract_message(response) == expected

    @pytest.mark.unit
    def test_top_level_message_wins_over_nested(self):
        response = {
            "message": "top",
            "output": [{"content": [{"text": {"message": "nested"}}]}],
        }
        assert extract_message(response) == "top"


class TestToolSettings:

    @pytest.mark.unit
    def test_parse_full_settings(self):
        parsed = ToolSettings.parse(json.dumps(make_settings()))

        assert parsed.enabled
        assert parsed.webhook_url == WEBHOOK_URL
        assert parsed.timeout == 30
        assert parsed.headers == ({"name": "X-Tenant", "value": "shop-1"},)
        action = parsed.find_action("book_appointment")
        assert action.parameters[0].required is True
        assert action.parameters[1].type == "integer"

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", [None, "", "{not json", "[1, 2]"])
    def test_empty_or_broken_settings_disable_tools(self, raw):
        parsed = ToolSettings.parse(raw)

        assert parsed.enabled is False
        assert parsed.actions == ()

    @pytest.mark.unit
    def test_unknown_parameter_type_becomes_string(self):
        raw = make_settings(actions=[{
            "name": "lookup",
            "parameters": [{"name": "when", "type": "datetime"}],
        }])
        parsed = ToolSettings.parse(raw)

        assert parsed.actions[0].parameters[0].type == "string"

    @pytest.mark.unit
    def test_wrong_shapes_tolerated(self):
        """ערכים מסוג לא צפוי ב-JSON של ההגדרות לא מפילים את הפענוח"""
        raw = make_settings(
            headers={"X-Key": "v"},
            actions=[{
                "name": "lookup",
                "parameters": [{"name": "when", "type": ["string"]}, {"name": "n", "type": 5}],
            }],
        )
        parsed = ToolSettings.parse(raw)

        assert parsed.headers == ()
        assert [p.type for p in parsed.actions[0].parameters] == ["string", "string"]

    @pytest.mark.unit
    def test_actions_object_instead_of_list(self):
        parsed = ToolSettings.parse(make_settings(actions={"name": "lookup"}))

        assert parsed.actions == ()

    @pytest.mark.unit
    def test_is_enabled_requires_url_and_actions(self, gateway):
        assert gateway.is_enabled_for(make_config())
        assert not gateway.is_enabled_for(make_config(enabled=False))
        assert not gateway.is_enabled_for(make_config(webhook_url=""))
        assert not gateway.is_enabled_for(make_config(actions=[]))
        assert not gateway.is_enabled_for(None)


class TestFunctionSchemas:

    @pytest.mark.unit
    def test_schema_shape(self, gateway):
        schemas = gateway.build_function_schemas(make_config())

        assert schemas == [{
            "type": "function",
            "function": {
                "name": "book_appointment",
                "description": "Book an appointment",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "date": {"type": "string", "description": "ISO date"},
                        "guests": {"type": "integer", "description": "Party size"},
                    },
                    "required": ["date"],
                },
            },
        }]


class TestExecute:

    @pytest.mark.unit
    async def test_payload_headers_and_signature(self, gateway, webhook_http):
        webhook_http.add(WEBHOOK_PATH, respond(200, {"result": "booked"}))

        result = await gateway.execute(
            make_config(),
            "book_appointment",
            {"date": "2024-05-01"},
            {"conversation_id": 7, "platform": "embed"},
        )

        assert result == {"success": True, "message": "booked", "raw_response": {"result": "booked"}}

        request = webhook_http.calls(WEBHOOK_PATH)[0]
        assert request.headers[SIGNATURE_HEADER] == sign_payload(request.content, "s3cret")
        assert request.headers["X-Tenant"] == "shop-1"

        payload = json.loads(request.content)
        assert payload["action"] == "book_appointment"
        assert payload["params"] == {"date": "2024-05-01"}
        assert payload["context"]["chatbot_name"] == "Shop Bot"
        assert payload["context"]["conversation_id"] == 7
        assert "timestamp" in payload["context"]
        assert "site_url" in payload["context"]

    @pytest.mark.unit
    async def test_no_signature_without_secret(self, gateway, webhook_http):
        webhook_http.add(WEBHOOK_PATH, respond(200, {"result": "ok"}))

        await gateway.execute(make_config(webhook_secret=""), "book_appointment", {})

        assert SIGNATURE_HEADER not in webhook_http.calls(WEBHOOK_PATH)[0].headers

    @pytest.mark.unit
    async def test_non_json_body_returned_as_text(self, gateway, webhook_http):
        webhook_http.add(WEBHOOK_PATH, respond(200, content=b"Accepted"))

        result = await gateway.execute(make_config(), "book_appointment", {})

        assert result == {"success": True, "result": "Accepted"}

    @pytest.mark.unit
    async def test_unrecognized_json_returned_as_is(self, gateway, webhook_http):
        webhook_http.add(WEBHOOK_PATH, respond(200, {"slots": ["10:00", "11:00"]}))

        result = await gateway.execute(make_config(), "book_appointment", {})

        assert result == {"slots": ["10:00", "11:00"]}

    @pytest.mark.unit
    async def test_unknown_action(self, gateway, webhook_http):
        with pytest.raises(ActionNotFoundError) as exc_info:
            await gateway.execute(make_config(), "delete_everything", {})

        assert exc_info.value.error_type == "action_not_found"
        assert webhook_http.requests == []

    @pytest.mark.unit
    async def test_disabled_tools(self, gateway, webhook_http):
        with pytest.raises(ToolNotConfiguredError):
            await gateway.execute(make_config(enabled=False), "book_appointment", {})

        assert webhook_http.requests == []

    @pytest.mark.unit
    async def test_non_2xx_status(self, gateway, webhook_http):
        webhook_http.add(WEBHOOK_PATH, respond(500, content=b"workflow crashed"))

        with pytest.raises(WebhookHttpError) as exc_info:
            await gateway.execute(make_config(), "book_appointment", {})

        assert exc_info.value.http_status == 500
        assert exc_info.value.message == "n8n returned error 500: workflow crashed"

    @pytest.mark.unit
    async def test_transport_failure(self, gateway, webhook_http):
        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        webhook_http.add(WEBHOOK_PATH, boom)

        with pytest.raises(WebhookTransportError) as exc_info:
            await gateway.execute(make_config(), "book_appointment", {})

        assert exc_info.value.error_type == "request_failed"


class TestConnectionTest:

    @pytest.mark.unit
    async def test_ping_payload(self, gateway, webhook_http):
        webhook_http.add(WEBHOOK_PATH, respond(200, {"ok": True}))

        await gateway.test_connection(WEBHOOK_URL, secret="s3cret")

        request = webhook_http.calls(WEBHOOK_PATH)[0]
        payload = json.loads(request.content)
        assert payload["action"] == TEST_CONNECTION_ACTION
        assert payload["context"]["test"] is True
        assert request.headers[SIGNATURE_HEADER] == sign_payload(request.content, "s3cret")

    @pytest.mark.unit
    async def test_empty_url(self, gateway, webhook_http):
        with pytest.raises(ToolNotConfiguredError):
            await gateway.test_connection("")

        assert webhook_http.requests == []

    @pytest.mark.unit
    async def test_error_status(self, gateway, webhook_http):
        webhook_http.add(WEBHOOK_PATH, respond(404, content=b"not registered"))

        with pytest.raises(WebhookHttpError):
            await gateway.test_connection(WEBHOOK_URL)
