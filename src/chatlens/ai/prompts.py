"""System prompt composition for the chat-analysis agent.

The prompt has three parts: an editable role definition, a locked section
(current date, available tools, member lookup strategy and date rules) and
editable response rules. Overrides may replace the editable parts only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Literal, Sequence

if TYPE_CHECKING:
    from .orchestration.tools.types import ToolDefinition

__all__ = [
    "ChatType",
    "PromptConfig",
    "build_system_prompt",
    "locked_section",
    "default_role_definition",
    "default_response_rules",
    "SUMMARY_INSTRUCTION",
]

ChatType = Literal["group", "private"]

SUMMARY_INSTRUCTION = (
    "Answer using only the information gathered so far; do not request more tools."
)


@dataclass(slots=True, frozen=True)
class PromptConfig:
    """User-editable prompt parts; empty strings fall back to the defaults."""

    role_definition: str = ""
    response_rules: str = ""


def build_system_prompt(
    chat_type: ChatType = "group",
    prompt_config: PromptConfig | None = None,
    *,
    tools: Sequence["ToolDefinition"] = (),
    now: datetime | None = None,
) -> str:
    """Assemble the system prompt for one agent execution."""

    role = (prompt_config.role_definition if prompt_config else "").strip()
    rules = (prompt_config.response_rules if prompt_config else "").strip()
    return f"""{role or default_role_definition(chat_type)}

{locked_section(chat_type, tools=tools, now=now)}

Response requirements:
{rules or default_response_rules()}"""


def locked_section(
    chat_type: ChatType,
    *,
    tools: Sequence["ToolDefinition"] = (),
    now: datetime | None = None,
) -> str:
    """The part of the prompt that user overrides never replace."""

    now = now or datetime.now()
    records = "private chat records" if chat_type == "private" else "group chat records"
    return f"""Today is {now.strftime('%A, %B')} {now.day}, {now.year}.

{_tools_section(records, tools)}

{_member_section(chat_type)}

{_time_section(now)}

Pick the tools that fit the user's question, gather the data, then answer from that data."""


def default_role_definition(chat_type: ChatType) -> str:
    if chat_type == "private":
        return """You are an assistant that analyzes private chat records.
Your job is to help the user understand and analyze their private chat history.

This is a one-to-one conversation between exactly two people. Focus on:
- the interaction between the two participants
- who starts conversations and who replies more
- how topics and tone change over time
- call it a conversation or a chat, never a group"""
    return """You are an assistant that analyzes group chat records.
Your job is to help the user understand and analyze their group chat history."""


def default_response_rules() -> str:
    return """1. Answer from the data the tools return; never invent information
2. Say so when the data is not enough to answer
3. Keep answers concise and use Markdown
4. Quote specific messages as evidence where useful
5. For statistics, summarize the trends and notable points"""


def _tools_section(records: str, tools: Sequence["ToolDefinition"]) -> str:
    if not tools:
        return f"No data tools are available for these {records}; answer from the conversation so far."
    lines = [f"You can use the following tools to read the {records}:", ""]
    for index, tool in enumerate(tools, start=1):
        lines.append(f"{index}. {tool.name} - {tool.description}")
    return "\n".join(lines)


def _member_section(chat_type: ChatType) -> str:
    if chat_type == "private":
        return """Member lookup:
- A private chat has exactly two participants, so the member list can be fetched directly
- When the user says "them", "he" or "she", look up the other participant first"""
    return """Member lookup:
- When the user mentions a specific member, fetch the member list first
- Members can be known by their account name, their group nickname or a user-defined alias; search across all three
- Once the member is found, use their id to filter messages by sender"""


def _time_section(now: datetime) -> str:
    example_year = now.year if now.month >= 10 else now.year - 1
    return f"""Date handling:
- If the user names a month without a year, use the current year ({now.year})
- If that month has not been reached yet this year, use the previous year
- Example: it is now {now.strftime('%B')} {now.year}, so "the chat in October" means October {example_year}"""
