"""
System prompt composition
"""
from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo

from chatbot.core.config import settings
from chatbot.db.models.chatbot_configuration import ChatbotConfiguration
from chatbot.db.models.conversation import DEFAULT_VISITOR_NAME
from chatbot.domain.repositories.configuration_repository import ConfigurationRepository

VISITOR_CONTEXT_MARKER = "### CURRENT USER INFORMATION ###"

TOOL_USAGE_RULES = (
    "### CRITICAL TOOL USAGE RULES ###\n"
    "You have access to tools/functions that perform REAL actions (scheduling, booking, etc.).\n"
    "1. You MUST use the appropriate tool to perform ANY action. NEVER claim to have done "
    "something without actually calling the tool.\n"
    "2. NEVER say 'I have scheduled', 'I booked', 'Done', etc. unless you have ACTUALLY called "
    "the tool and received a success response.\n"
    "3. If you need information to call a tool (name, email, date, etc.), ask the user FIRST, "
    "then call the tool.\n"
    "4. After calling a tool successfully, report the ACTUAL result from the tool response - "
    "do not make up details.\n"
    "5. If a tool call fails, tell the user honestly and offer alternatives.\n\n"
    "### DATE/TIME HANDLING ###\n"
    "1. When users mention relative dates like 'tomorrow', 'next week', 'in 3 days', "
    "'next Monday', etc., you MUST calculate the actual date based on today's date above.\n"
    "2. When calling functions/tools:\n"
    "   - DATE parameters should contain ONLY the date in DD/MM/YYYY format (e.g., '24/12/2025')\n"
    "   - TIME parameters should contain ONLY the time in HH:MM format (e.g., '14:00')\n"
    "   - NEVER mix date and time in a single parameter\n"
    "3. Do NOT ask the user to provide a specific format - convert it yourself.\n\n"
    "Example: If today is Monday, December 23, 2024 and user says 'schedule for tomorrow at 2pm', "
    "use date='24/12/2024' and time='14:00' as SEPARATE parameters."
)


def format_long_date(now: datetime) -> str:
    """Monday, December 23, 2024"""
    return f"{now:%A}, {now:%B} {now.day}, {now.year}"


def format_clock_time(now: datetime) -> str:
    """2:05 PM"""
    hour = now.hour % 12 or 12
    return f"{hour}:{now:%M} {now:%p}"


def has_visitor_name(visitor_name: str | None) -> bool:
    return bool(visitor_name) and visitor_name != DEFAULT_VISITOR_NAME


def get_visitor_context(visitor_name: str) -> str:
    return (
        f"\n\n{VISITOR_CONTEXT_MARKER}\n"
        f"The user you are chatting with has provided their name: {visitor_name}\n"
        "IMPORTANT: When the user needs to provide their name (e.g., for scheduling meetings, "
        f"filling forms, or making bookings), use the name \"{visitor_name}\" - do NOT ask for "
        "their name again since they already provided it at the start of the conversation."
    )


class PromptBuilder:
    """Builds the system prompt for a conversation"""

    def __init__(
        self,
        config_repository: ConfigurationRepository,
        clock: Callable[[ZoneInfo], datetime] | None = None,
    ) -> None:
        self._configs = config_repository
        self._clock = clock or (lambda tz: datetime.now(tz))

    def get_datetime_context(self) -> str:
        tz = ZoneInfo(settings.SITE_TIMEZONE)
        now = self._clock(tz)
        return (
            "### CURRENT DATE & TIME ###\n"
            f"Today is: {format_long_date(now)}\n"
            f"Current time: {format_clock_time(now)} ({settings.SITE_TIMEZONE})\n\n"
            + TOOL_USAGE_RULES
        )

    def get_default_system_prompt(self) -> str:
        return (
            self.get_datetime_context() + "\n\n"
            f"You are a helpful customer service chatbot for the website {settings.SITE_NAME}. "
            f"The website is described as: {settings.SITE_DESCRIPTION}. "
            "Be friendly, helpful, and concise in your responses. If you don't know the answer "
            "to a question, politely say so and suggest contacting the site administrator for "
            "more information. Keep responses under 3-4 sentences when possible."
        )

    async def build_knowledge_prompt(
        self,
        knowledge: str,
        persona: str,
        knowledge_sources: str | None = None,
        visitor_name: str | None = None,
    ) -> str:
        prompt = self.get_datetime_context() + "\n\n" + persona

        if has_visitor_name(visitor_name):
            prompt += get_visitor_context(visitor_name)

        prompt += "\n\n### KNOWLEDGE BASE ###\n\n" + knowledge

        site_knowledge = ""
        if knowledge_sources:
            site_knowledge = await self._configs.get_knowledge_from_sources(knowledge_sources)

        if site_knowledge:
            prompt += (
                "\n\n### IMPORTANT: ADDITIONAL ROLE ###\n\n"
                "In addition to your primary role described above, you MUST also answer questions "
                "based on the website content provided below. When users ask about ANY topic covered "
                "in the website content section, provide helpful and accurate answers based on that "
                "content. Always cite the source URL when answering questions from website content.\n"
                "\n### WEBSITE CONTENT ###\n\n"
                + site_knowledge
            )

        prompt += (
            "\n\nWhen responding to user questions, always consult the knowledge base provided "
            "above to ensure accurate information."
        )

        if knowledge_sources:
            prompt += (
                "\n\n### CRITICAL REMINDER ###\n"
                "You MUST answer questions about topics mentioned in the WEBSITE CONTENT section "
                "above, even if they are not related to your primary focus. DO NOT say you don't "
                "have information if the answer exists in the WEBSITE CONTENT section."
            )
        return prompt

    async def build(
        self,
        config: ChatbotConfiguration | None,
        visitor_name: str | None = None,
    ) -> str:
        """
        knowledge + persona -> פרומפט ידע מלא; system_prompt -> תאריך + הפרומפט;
        אחרת פרומפט ברירת מחדל של האתר. בלוק פרטי המבקר מתווסף פעם אחת בלבד.
        """
        if config is None:
            config = await self._configs.get_default()

        prompt = None
        if config is not None:
            if config.knowledge and config.persona:
                prompt = await self.build_knowledge_prompt(
                    config.knowledge, config.persona, config.knowledge_sources, visitor_name
                )
            elif config.system_prompt:
                prompt = self.get_datetime_context() + "\n\n" + config.system_prompt

        if prompt is None:
            prompt = self.get_default_system_prompt()

        if has_visitor_name(visitor_name) and VISITOR_CONTEXT_MARKER not in prompt:
            prompt += get_visitor_context(visitor_name)
        return prompt
