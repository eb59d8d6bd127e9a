"""
בדיקות Repositories - שיחות, הודעות וקונפיגורציות מעל SQLite בזיכרון
"""
import json

import pytest
from sqlalchemy.exc import IntegrityError

from chatbot.db.models.conversation import ConversationStatus, PlatformType
from chatbot.db.models.message import SenderType


class TestConversationRepository:

    @pytest.mark.unit
    async def test_create_defaults(self, container):
        conversation = await container.conversations.create(
            "", None, None, "session-1", PlatformType.EMBED
        )

        assert conversation.id is not None
        assert conversation.visitor_name == "Visitor"
        assert conversation.status == ConversationStatus.ACTIVE
        assert await container.conversations.count() == 1

    @pytest.mark.unit
    async def test_find_by_platform_scoped_to_configuration(self, container, config_factory):
        shop = await config_factory(name="Shop")
        support = await config_factory(name="Support")
        created = await container.conversations.create(
            "Dana", shop.id, shop.name, "555", PlatformType.TELEGRAM
        )

        found = await container.conversations.find_by_platform(PlatformType.TELEGRAM, "555", shop.id)

        assert found.id == created.id
        assert await container.conversations.find_by_platform(
            PlatformType.TELEGRAM, "555", support.id
        ) is None
        assert await container.conversations.find_by_platform(
            PlatformType.EMBED, "555", shop.id
        ) is None

    @pytest.mark.unit
    async def test_ended_conversation_found_but_not_active(self, container):
        conversation = await container.conversations.create(
            "Dana", None, None, "session-1", PlatformType.EMBED
        )

        assert await container.conversations.end(conversation.id) is True

        found = await container.conversations.find_by_platform(PlatformType.EMBED, "session-1", None)
        assert found.status == ConversationStatus.ENDED
        assert found.is_active is False

    @pytest.mark.unit
    async def test_reactivate(self, container):
        conversation = await container.conversations.create(
            "Dana", None, None, "555", PlatformType.TELEGRAM
        )
        await container.conversations.end(conversation.id)

        assert await container.conversations.reactivate(conversation.id) is True
        assert (await container.conversations.get(conversation.id)).is_active

    @pytest.mark.unit
    async def test_end_unknown_conversation(self, container):
        assert await container.conversations.end(999) is False

    @pytest.mark.unit
    async def test_touch_updates_timestamp(self, container):
        conversation = await container.conversations.create(
            "Dana", None, None, "session-1", PlatformType.EMBED
        )

        await container.conversations.touch(conversation.id)

        refreshed = await container.conversations.get(conversation.id)
        assert refreshed.updated_at >= conversation.updated_at

    @pytest.mark.unit
    async def test_duplicate_platform_chat_rejected(self, container, config_factory):
        """צ'אט חיצוני אחד = שיחה אחת לכל קונפיגורציה"""
        config = await config_factory(name="Shop")
        await container.conversations.create("Dana", config.id, config.name, "555", PlatformType.TELEGRAM)

        with pytest.raises(IntegrityError):
            await container.conversations.create(
                "Dana", config.id, config.name, "555", PlatformType.TELEGRAM
            )


class TestMessageRepository:

    @pytest.fixture
    async def conversation(self, container):
        return await container.conversations.create(
            "Dana", None, None, "session-1", PlatformType.EMBED
        )

    @pytest.mark.unit
    async def test_recent_excludes_function_messages(self, container, conversation):
        await container.messages.add(conversation.id, SenderType.USER, "book a ride")
        await container.messages.add(conversation.id, SenderType.FUNCTION, "🔧 Function Call: book")
        await container.messages.add(conversation.id, SenderType.AI, "Booked!")

        recent = await container.messages.get_recent(conversation.id)

        assert [m.message for m in recent] == ["book a ride", "Booked!"]

    @pytest.mark.unit
    async def test_recent_keeps_latest_in_order(self, container, conversation):
        for i in range(15):
            await container.messages.add(conversation.id, SenderType.USER, f"message {i}")

        recent = await container.messages.get_recent(conversation.id, limit=10)

        assert [m.message for m in recent] == [f"message {i}" for i in range(5, 15)]

    @pytest.mark.unit
    async def test_transcript_filters_audit_text(self, container, conversation):
        await container.messages.add(conversation.id, SenderType.USER, "hi")
        # audit ישן שנשמר כהודעת AI
        await container.messages.add(conversation.id, SenderType.AI, "Function Call: lookup\nStatus: ✅ SUCCESS")
        await container.messages.add(conversation.id, SenderType.AI, "Hello!")

        transcript = await container.messages.get_transcript(conversation.id)

        assert [m.message for m in transcript] == ["hi", "Hello!"]
        assert len(await container.messages.list_for_conversation(conversation.id)) == 3


class TestConfigurationRepository:

    @pytest.mark.unit
    async def test_default_prefers_named_configuration(self, container, config_factory):
        await config_factory(name="Other")
        await config_factory(name="Default")
        named = await config_factory(name="Default Configuration")

        assert (await container.configurations.get_default()).id == named.id

    @pytest.mark.unit
    async def test_default_falls_back_to_first_row(self, container, config_factory):
        first = await config_factory(name="Shop")
        await config_factory(name="Support")

        assert (await container.configurations.get_default()).id == first.id

    @pytest.mark.unit
    async def test_no_configurations(self, container):
        assert await container.configurations.get_default() is None

    @pytest.mark.unit
    async def test_embed_token_requires_enabled(self, container, config_factory):
        await config_factory(name="Off", embed_token="c" * 64, embed_enabled=False)
        on = await config_factory(name="On", embed_token="d" * 64, embed_enabled=True)

        assert await container.configurations.get_by_embed_token("c" * 64) is None
        assert (await container.configurations.get_by_embed_token("d" * 64)).id == on.id

    @pytest.mark.unit
    async def test_knowledge_from_sources(self, container, document_factory):
        page = await document_factory("Shipping", "We ship worldwide.", url="https://shop.test/shipping")

        knowledge = await container.configurations.get_knowledge_from_sources(
            json.dumps([page.id, 999])
        )

        assert knowledge.startswith("IMPORTANT: When answering questions")
        assert "--- page: Shipping ---\nURL: https://shop.test/shipping\nWe ship worldwide." in knowledge

    @pytest.mark.unit
    async def test_knowledge_token_limit(self, container, document_factory):
        small = await document_factory("Small", "short text")
        huge = await document_factory("Huge", "x" * 400_001)
        after = await document_factory("After", "never included")

        knowledge = await container.configurations.get_knowledge_from_sources(
            json.dumps([small.id, huge.id, after.id])
        )

        assert "Small" in knowledge
        assert "Huge" not in knowledge
        assert "After" not in knowledge

    @pytest.mark.unit
    @pytest.mark.parametrize("sources", [None, "", "not json", "{}", "[]"])
    async def test_knowledge_invalid_sources(self, container, sources):
        assert await container.configurations.get_knowledge_from_sources(sources) == ""
