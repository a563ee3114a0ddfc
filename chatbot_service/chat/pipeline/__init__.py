from .intent_classifier import (
    Budget,
    Entities,
    Intent,
    IntentResult,
    classify_intent,
    context_patch,
    extract_entities,
)
from .moderation import ModerationGate, ModerationVerdict, sanitize
from .prompt_assembler import (
    HISTORY_WINDOW,
    SYSTEM_PROMPT,
    assemble_messages,
    build_system_instruction,
)

__all__ = [
    "Budget",
    "Entities",
    "Intent",
    "IntentResult",
    "classify_intent",
    "context_patch",
    "extract_entities",
    "ModerationGate",
    "ModerationVerdict",
    "sanitize",
    "HISTORY_WINDOW",
    "SYSTEM_PROMPT",
    "assemble_messages",
    "build_system_instruction",
]
