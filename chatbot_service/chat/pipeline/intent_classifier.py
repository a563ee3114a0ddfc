from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Intent(str, Enum):
    BUILD_HELP = "build_help"
    PRODUCT_INQUIRY = "product_inquiry"
    SUPPORT = "support"
    GENERAL = "general"


@dataclass(frozen=True)
class IntentResult:
    intent: Intent
    confidence: float
    scores: dict[str, int]


@dataclass(frozen=True)
class Budget:
    amount: float
    currency: str

    def to_dict(self) -> dict[str, Any]:
        return {"amount": self.amount, "currency": self.currency}


@dataclass
class Entities:
    budget: Budget | None = None
    purpose: list[str] = field(default_factory=list)
    component_types: list[str] = field(default_factory=list)
    brands: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "budget": self.budget.to_dict() if self.budget else None,
            "purpose": list(self.purpose),
            "component_types": list(self.component_types),
            "brands": list(self.brands),
        }


# Declaration order breaks ties: the first category wins.
_LEXICON: list[tuple[Intent, list[str]]] = [
    (
        Intent.BUILD_HELP,
        [
            "build", "tư vấn", "cấu hình", "chọn", "lắp ráp", "pc", "computer",
            "cpu", "gpu", "ram", "mainboard", "psu", "power supply",
            "case", "cooler", "storage", "ssd", "hdd",
        ],
    ),
    (
        Intent.PRODUCT_INQUIRY,
        [
            "sản phẩm", "product", "thông tin", "specs", "thông số",
            "so sánh", "compare", "giá", "price", "review", "đánh giá",
        ],
    ),
    (
        Intent.SUPPORT,
        [
            "help", "giúp", "hỗ trợ", "vấn đề", "problem", "lỗi", "error",
            "không hoạt động", "không work", "troubleshoot", "sửa",
        ],
    ),
    (
        Intent.GENERAL,
        ["xin chào", "hello", "hi", "chào", "hỏi", "question", "câu hỏi"],
    ),
]

# Grouped thousands ("20.000.000", "15,000,000") before plain decimals ("15.5", "15,5").
_GROUPED = r"\d{1,3}(?:[.,]\d{3})+"
_AMOUNT = r"(" + _GROUPED + r"|\d+(?:[.,]\d+)?)"
_LOCAL_CURRENCY = r"(?:vnđ|vnd|đ)"
_ANY_CURRENCY = r"(?:vnđ|vnd|đ|usd)"
_DOLLAR = r"(?:\$\s*)?"

# (pattern, multiplier); first match wins. The one-letter units k and m only
# count with a currency suffix, so "4k 144hz" is not a budget.
_BUDGET_PATTERNS: list[tuple[re.Pattern[str], int]] = [
    (
        re.compile(_DOLLAR + _AMOUNT + r"\s*(?:triệu|tr|million)\b(?:\s*" + _ANY_CURRENCY + r")?"),
        1_000_000,
    ),
    (re.compile(_AMOUNT + r"\s*m\s*" + _ANY_CURRENCY + r"(?!\w)"), 1_000_000),
    (
        re.compile(_DOLLAR + _AMOUNT + r"\s*(?:nghìn|ngàn|thousand)\b(?:\s*" + _ANY_CURRENCY + r")?"),
        1_000,
    ),
    (re.compile(_AMOUNT + r"\s*k\s*" + _ANY_CURRENCY + r"(?!\w)"), 1_000),
    (re.compile(r"\$\s*" + _AMOUNT + r"(?:\s*(million|m)\b)?"), 1),
    (re.compile(_AMOUNT + r"\s*usd\b"), 1),
    (re.compile(_AMOUNT + r"\s*" + _LOCAL_CURRENCY + r"(?!\w)"), 1),
]

_PURPOSES: dict[str, list[str]] = {
    "gaming": ["gaming", "chơi game", "game"],
    "office": ["office", "văn phòng", "work", "làm việc", "word", "excel"],
    "design": ["design", "thiết kế", "graphic", "photoshop", "illustrator", "editing"],
    "streaming": ["streaming", "phát trực tiếp", "stream", "youtube"],
    "rendering": ["render", "3d", "video editing"],
}

_COMPONENTS: dict[str, list[str]] = {
    "cpu": ["cpu", "processor", "chip"],
    "gpu": ["gpu", "graphics card", "video card", "vga", "card đồ họa"],
    "ram": ["ram", "memory", "bộ nhớ"],
    "mainboard": ["mainboard", "bo mạch chủ", "main"],
    "storage": ["ssd", "hdd", "storage", "hard drive", "ổ cứng"],
    "psu": ["psu", "power supply", "nguồn", "bộ nguồn"],
    "case": ["case", "thùng máy", "chassis"],
    "cooler": ["cooler", "fan", "tản nhiệt", "cooling"],
}

_BRANDS: list[str] = [
    "intel", "amd", "nvidia", "asus", "msi", "gigabyte", "asus rog",
    "corsair", "kingston", "samsung", "western digital", "seagate",
    "evga", "zotac", "galax", "colorful",
]


def classify_intent(text: str, prior_purpose: str | None = None) -> IntentResult:
    """Count lexicon hits per category; the highest count wins.

    A non-general ``prior_purpose`` from the session context overrides the
    winner whenever that category still scored at least one hit. Confidence
    is always the top score over the total, even when overridden.
    """
    msg = text.lower()
    scores: dict[str, int] = {
        intent.value: sum(1 for k in keywords if k in msg) for intent, keywords in _LEXICON
    }

    best = Intent.GENERAL
    best_score = 0
    for intent, _ in _LEXICON:
        if scores[intent.value] > best_score:
            best, best_score = intent, scores[intent.value]

    if prior_purpose and prior_purpose != Intent.GENERAL.value and scores.get(prior_purpose, 0) > 0:
        best = Intent(prior_purpose)

    total = sum(scores.values())
    confidence = min(best_score / total, 1.0) if total > 0 else 0.5
    return IntentResult(intent=best, confidence=confidence, scores=scores)


def _parse_amount(raw: str) -> float:
    if re.fullmatch(_GROUPED, raw):
        return float(re.sub(r"[.,]", "", raw))
    return float(raw.replace(",", "."))


def extract_budget(text: str) -> Budget | None:
    msg = text.lower()
    for pattern, multiplier in _BUDGET_PATTERNS:
        match = pattern.search(msg)
        if not match:
            continue
        amount = _parse_amount(match.group(1))
        if multiplier == 1 and match.lastindex and match.lastindex >= 2 and match.group(2):
            # "$2 million"
            multiplier = 1_000_000
        amount *= multiplier
        if amount.is_integer():
            amount = int(amount)
        currency = "USD" if ("$" in match.group(0) or "usd" in match.group(0)) else "VND"
        return Budget(amount=amount, currency=currency)
    return None


def _scan(msg: str, lexicon: dict[str, list[str]]) -> list[str]:
    return [label for label, keywords in lexicon.items() if any(k in msg for k in keywords)]


def extract_entities(text: str) -> Entities:
    msg = text.lower()
    return Entities(
        budget=extract_budget(msg),
        purpose=_scan(msg, _PURPOSES),
        component_types=_scan(msg, _COMPONENTS),
        brands=[b for b in _BRANDS if b in msg],
    )


def context_patch(intent: IntentResult, entities: Entities) -> dict[str, Any]:
    """Session-context update derived from one turn's classification."""
    preferences: dict[str, Any] = {}
    if entities.budget is not None:
        preferences["budget"] = entities.budget.to_dict()
    if entities.purpose:
        preferences["usage"] = list(entities.purpose)
    if entities.brands:
        preferences["brands"] = list(entities.brands)

    patch: dict[str, Any] = {}
    if preferences:
        patch["user_profile"] = {"preferences": preferences}
    if intent.intent != Intent.GENERAL:
        patch["purpose"] = intent.intent.value
    return patch
