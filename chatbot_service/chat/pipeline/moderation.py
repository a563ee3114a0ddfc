from __future__ import annotations

import re
from dataclasses import dataclass

from ...config import ModerationConfig
from ...metrics import MODERATION_REJECTIONS
from ...utils import get_logger

logger = get_logger("chat_moderation")

REASON_TOO_LONG = "message_too_long"
REASON_SUSPICIOUS = "suspicious_content"
REASON_BLOCKED = "blocked_content"


@dataclass(frozen=True)
class ModerationVerdict:
    allowed: bool
    reason: str | None
    sanitized_text: str


# Checked in order; the first hit rejects the message.
_INJECTION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"ignore\s+(previous|all)\s+(instructions|prompts?)", re.IGNORECASE),
    re.compile(r"system\s*:\s*", re.IGNORECASE),
    re.compile(r"forget\s+(everything|all)", re.IGNORECASE),
    re.compile(r"new\s+(instructions|rules)", re.IGNORECASE),
    re.compile(r"you\s+are\s+now", re.IGNORECASE),
    re.compile(r"act\s+as\s+if", re.IGNORECASE),
    re.compile(r"pretend\s+(to\s+be|that)", re.IGNORECASE),
    re.compile(r"<script>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\$\{"),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"exec\s*\(", re.IGNORECASE),
]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


def sanitize(text: str) -> str:
    """Drop control bytes, collapse whitespace runs to one space, trim. Idempotent."""
    cleaned = _CONTROL_CHARS.sub("", text)
    cleaned = _WHITESPACE.sub(" ", cleaned)
    return cleaned.strip()


def find_injection(text: str) -> str | None:
    for pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            return pattern.pattern
    return None


class ModerationGate:
    """Screens inbound text before any other stage sees it.

    Only ``verdict.sanitized_text`` may flow downstream; the raw message is
    used for the length check and nothing else.
    """

    def __init__(self, config: ModerationConfig | None = None) -> None:
        self.config = config or ModerationConfig()
        self._blocked = tuple(t.lower() for t in self.config.blocked_terms if t)

    def _reject(self, reason: str, sanitized: str) -> ModerationVerdict:
        MODERATION_REJECTIONS.labels(reason=reason).inc()
        return ModerationVerdict(allowed=False, reason=reason, sanitized_text=sanitized)

    def moderate(self, raw_text: str) -> ModerationVerdict:
        if len(raw_text) > self.config.max_length:
            logger.info(
                "Message rejected: length %d exceeds %d", len(raw_text), self.config.max_length
            )
            return self._reject(REASON_TOO_LONG, "")

        sanitized = sanitize(raw_text)

        pattern = find_injection(sanitized)
        if pattern is not None:
            logger.warning(
                "Prompt injection detected pattern=%s message=%s", pattern, sanitized[:100]
            )
            return self._reject(REASON_SUSPICIOUS, sanitized)

        lowered = sanitized.lower()
        for term in self._blocked:
            if term in lowered:
                logger.warning("Blocked term detected message=%s", sanitized[:100])
                return self._reject(REASON_BLOCKED, sanitized)

        return ModerationVerdict(allowed=True, reason=None, sanitized_text=sanitized)

    def check_response(self, text: str) -> bool:
        """Soft check on generated text: logs oversize replies, never blocks them."""
        if len(text) > self.config.max_length:
            logger.warning("Assistant reply exceeds max length length=%d", len(text))
            return False
        return True
