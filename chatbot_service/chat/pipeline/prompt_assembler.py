from __future__ import annotations

import json
from typing import Any, Sequence

from ..memory import Message, SessionContext

HISTORY_WINDOW = 10

SYSTEM_PROMPT = """You are a helpful AI assistant for a PC building platform. Your role is to help users:
1. Understand PC components and their compatibility
2. Build PC configurations based on their needs and budget
3. Answer technical questions about PC hardware
4. Provide product recommendations
5. Troubleshoot PC-related issues

Guidelines:
- Be friendly, professional, and helpful
- Provide accurate technical information
- Ask clarifying questions when needed (budget, use case, preferences)
- Suggest compatible components
- Consider price-to-performance ratios
- Keep responses concise but informative"""

_PURPOSE_GUIDANCE = {
    "build_help": (
        "Current Context: User is building a PC. Focus on component selection, "
        "compatibility, and recommendations."
    ),
    "product_inquiry": (
        "Current Context: User is inquiring about specific products. Provide detailed "
        "information about product specifications, compatibility, and comparisons."
    ),
    "support": (
        "Current Context: User needs support. Be empathetic and help solve their issue "
        "step by step."
    ),
}

_EXPERIENCE_GUIDANCE = {
    "beginner": "Use simpler language and explain technical terms.",
    "expert": "You can use technical terminology and detailed specifications.",
}

_CLOSING = (
    "Remember: Always prioritize compatibility and value for money. "
    "If you don't know something, admit it rather than guessing."
)

KNOWLEDGE_DELIMITER = "\n\n---\n\n"


def build_system_instruction(context: SessionContext) -> str:
    parts = [SYSTEM_PROMPT]

    guidance = _PURPOSE_GUIDANCE.get(context.purpose)
    if guidance:
        parts.append(guidance)

    level = context.user_profile.experience_level
    level_line = f"User Experience Level: {level}"
    if level in _EXPERIENCE_GUIDANCE:
        level_line += f" - {_EXPERIENCE_GUIDANCE[level]}"
    parts.append(level_line)

    preferences = context.user_profile.preferences
    if preferences:
        parts.append(
            "User Preferences: " + json.dumps(preferences, ensure_ascii=False, sort_keys=True)
        )

    parts.append(_CLOSING)
    return "\n\n".join(parts)


def build_knowledge_block(knowledge: Sequence[Any]) -> str:
    body = KNOWLEDGE_DELIMITER.join(
        f"[Knowledge Base]\n{entry.title}\n{entry.content}" for entry in knowledge
    )
    return (
        f"Relevant Knowledge Base Information:\n\n{body}\n\n"
        "Use this information to provide accurate answers."
    )


def assemble_messages(
    *,
    system_instruction: str,
    knowledge: Sequence[Any],
    history: Sequence[Message],
    user_message: str,
) -> list[dict[str, str]]:
    """Ordered chat messages for one completion call.

    system instruction, optional knowledge block, at most the last
    ``HISTORY_WINDOW`` turns (role and content only), then the new message.
    """
    messages = [{"role": "system", "content": system_instruction}]
    if knowledge:
        messages.append({"role": "system", "content": build_knowledge_block(knowledge)})
    for turn in list(history)[-HISTORY_WINDOW:]:
        messages.append(turn.to_prompt_message())
    messages.append({"role": "user", "content": user_message})
    return messages
