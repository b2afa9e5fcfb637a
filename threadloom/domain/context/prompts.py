from typing import List, Optional
import json
import re

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from threadloom.domain.models.messages import Message

SUMMARY_PREFIX = "[Previous conversation summary"

DEFAULT_SUMMARY_PROMPT = """You are summarizing a conversation for context management. Create a concise summary that:

1. Preserves key decisions, facts, and user preferences
2. Keeps important technical details and code references
3. Notes pending tasks and unresolved questions
4. Mentions files, images and other media that were discussed (what they showed, not their contents)
5. Uses bullet points
6. Is roughly 200-500 words

Leave out greetings, redundant information, raw tool call details (keep only outcomes) and verbose explanations.

Format:
## Conversation Summary
[Your summary here]"""

STRUCTURED_SUMMARY_PROMPT = """You are summarizing a conversation for context management. Reply with a JSON object with these keys:

{
  "decisions": ["Key decision 1", ...],
  "preferences": ["User preference 1", ...],
  "currentState": ["Current state fact 1", ...],
  "openQuestions": ["Unresolved question 1", ...],
  "references": ["file.py:123", "userId: abc123", "URL: https://...", ...]
}

- decisions: choices that were made (architecture, approach, tools)
- preferences: user requirements, constraints, style preferences
- currentState: what has been done so far, current progress, known issues
- openQuestions: unresolved issues and items to revisit
- references: file paths, identifiers, URLs, config values, documents needed later

Keep each item to one or two sentences.
Respond ONLY with valid JSON, no additional text."""

TIERED_SUMMARY_PROMPT = """You are creating a higher-level summary from several earlier conversation summaries. Consolidate them:

1. Merge related decisions and facts
2. Keep the most important details
3. Remove redundancy across summaries
4. Keep chronological context where it matters
5. Include any later conversation history that follows the summaries
6. Stay concise

Format:
## Tiered Summary (Level {tier})
[Your consolidated summary here]"""

TOOL_OUTPUT_PREVIEW_CHARS = 200

_FENCE = re.compile(r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


class StructuredSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    decisions: List[str] = Field(default_factory=list)
    preferences: List[str] = Field(default_factory=list)
    current_state: List[str] = Field(default_factory=list)
    open_questions: List[str] = Field(default_factory=list)
    references: List[str] = Field(default_factory=list)


def summary_header(tier: Optional[int] = None) -> str:
    if tier is None:
        return "[Previous conversation summary]"
    return f"[Previous conversation summary - Tier {tier}]"


def is_summary_message(message: Message) -> bool:
    return (
        message.role == "assistant"
        and isinstance(message.content, str)
        and message.content.startswith(SUMMARY_PREFIX)
    )


def summary_tier_of(message: Message) -> int:
    """Tier recorded in a summary header; untiered summaries count as tier 0"""
    match = re.match(r"\[Previous conversation summary - Tier (\d+)\]", message.content)
    return int(match.group(1)) if match else 0


def format_messages_for_summary(messages: List[Message]) -> str:
    lines = []
    for message in messages:
        role = message.role.upper()
        if isinstance(message.content, str):
            lines.append(f"{role}: {message.content}")
            continue

        parts = []
        for part in message.content:
            if part.type == "text":
                parts.append(part.text)
            elif part.type == "tool-call":
                parts.append(f"[Tool call: {part.tool_name}]")
            else:
                output = part.output if isinstance(part.output, str) else json.dumps(part.output, default=str)
                parts.append(f"[Tool result: {output[:TOOL_OUTPUT_PREVIEW_CHARS]}...]")
        if parts:
            lines.append(f"{role}: " + "\n".join(parts))

    return "\n\n".join(lines)


def parse_structured_summary(text: str) -> Optional[StructuredSummary]:
    """Parse a structured reply, tolerating a Markdown code fence; None if it does not fit"""

    match = _FENCE.match(text)
    if match:
        text = match.group(1)

    try:
        data = json.loads(text)
    except ValueError:
        return None

    if not isinstance(data, dict):
        return None

    try:
        return StructuredSummary.model_validate(data)
    except ValidationError:
        return None


def format_structured_summary(summary: StructuredSummary) -> str:
    sections = []
    for title, items in (
        ("Decisions", summary.decisions),
        ("Preferences", summary.preferences),
        ("Current State", summary.current_state),
        ("Open Questions", summary.open_questions),
        ("References", summary.references),
    ):
        if items:
            sections.append(f"## {title}\n" + "\n".join(f"- {item}" for item in items))
    return "\n\n".join(sections)
