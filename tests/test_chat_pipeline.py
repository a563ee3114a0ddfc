from __future__ import annotations

from types import SimpleNamespace

import pytest

from chatbot_service.chat.memory import Message, SessionContext, UserProfile
from chatbot_service.chat.pipeline import intent_classifier as ic
from chatbot_service.chat.pipeline import prompt_assembler as pa


# ── Intent ──────────────────────────────────────────────────────────────────


def test_build_request_is_build_help_with_full_confidence():
    result = ic.classify_intent("Tôi muốn build PC gaming 20 triệu")
    assert result.intent == ic.Intent.BUILD_HELP
    assert result.confidence == 1.0
    assert result.scores["build_help"] == 2


def test_support_message():
    result = ic.classify_intent("Máy tính của tôi bị lỗi không lên nguồn")
    assert result.intent == ic.Intent.SUPPORT


def test_no_keywords_is_general_with_half_confidence():
    result = ic.classify_intent("ok")
    assert result.intent == ic.Intent.GENERAL
    assert result.confidence == 0.5
    assert sum(result.scores.values()) == 0


def test_ties_go_to_the_first_category():
    result = ic.classify_intent("hello, giá cpu")
    assert result.intent == ic.Intent.BUILD_HELP
    assert result.confidence == pytest.approx(1 / 3)


def test_prior_purpose_sticks_when_it_still_scores():
    result = ic.classify_intent("so sánh cpu gpu ram", prior_purpose="product_inquiry")
    assert result.intent == ic.Intent.PRODUCT_INQUIRY
    assert result.confidence == pytest.approx(3 / 4)


def test_sticky_support_keeps_top_score_confidence():
    result = ic.classify_intent("build pc cpu bị lỗi", prior_purpose="support")
    assert result.intent == ic.Intent.SUPPORT
    assert result.confidence == pytest.approx(0.75)


def test_prior_purpose_ignored_without_hits():
    result = ic.classify_intent("cpu gpu ram", prior_purpose="support")
    assert result.intent == ic.Intent.BUILD_HELP
    general_prior = ic.classify_intent("cpu", prior_purpose="general")
    assert general_prior.intent == ic.Intent.BUILD_HELP


# ── Entities ────────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "text, amount, currency",
    [
        ("build pc 20 triệu", 20_000_000, "VND"),
        ("khoảng 15.5 triệu", 15_500_000, "VND"),
        ("ngân sách 15,5tr", 15_500_000, "VND"),
        ("tầm 500k vnđ thôi", 500_000, "VND"),
        ("2m usd", 2_000_000, "USD"),
        ("Tôi có 20.000.000 vnd", 20_000_000, "VND"),
        ("ngân sách 15,000,000đ", 15_000_000, "VND"),
        ("budget $1,500", 1500, "USD"),
        ("budget $1500", 1500, "USD"),
        ("around 1500 usd", 1500, "USD"),
        ("$2 million rig", 2_000_000, "USD"),
        ("2 million usd", 2_000_000, "USD"),
        ("giá 25000000 vnđ", 25_000_000, "VND"),
    ],
)
def test_extract_budget(text, amount, currency):
    budget = ic.extract_budget(text)
    assert budget is not None
    assert budget.amount == amount
    assert budget.currency == currency


@pytest.mark.parametrize(
    "text",
    [
        "tư vấn cấu hình",
        "Màn hình 4k 144hz cho chơi game",
        "gpu chơi game 4k",
        "tầm 500k thôi",
        "card 8k đồ họa",
    ],
)
def test_extract_budget_none(text):
    assert ic.extract_budget(text) is None


def test_extract_entities_for_build_request():
    entities = ic.extract_entities("Tôi muốn build PC gaming 20 triệu")
    assert entities.budget == ic.Budget(amount=20_000_000, currency="VND")
    assert entities.purpose == ["gaming"]
    assert entities.component_types == []
    assert entities.brands == []


def test_extract_entities_components_and_brands():
    entities = ic.extract_entities("So sánh card đồ họa Nvidia với AMD, thêm SSD Samsung")
    assert "gpu" in entities.component_types
    assert "storage" in entities.component_types
    assert entities.brands == ["amd", "nvidia", "samsung"]


def test_context_patch_carries_preferences_and_purpose():
    intent = ic.classify_intent("Tôi muốn build PC gaming 20 triệu")
    entities = ic.extract_entities("Tôi muốn build PC gaming 20 triệu")
    patch = ic.context_patch(intent, entities)
    assert patch == {
        "purpose": "build_help",
        "user_profile": {
            "preferences": {
                "budget": {"amount": 20_000_000, "currency": "VND"},
                "usage": ["gaming"],
            }
        },
    }


def test_context_patch_empty_for_plain_general_message():
    intent = ic.classify_intent("ok")
    assert ic.context_patch(intent, ic.extract_entities("ok")) == {}


# ── Prompt ──────────────────────────────────────────────────────────────────


def test_system_instruction_includes_purpose_level_and_preferences():
    ctx = SessionContext(
        purpose="support",
        user_profile=UserProfile(experience_level="expert", preferences={"usage": ["gaming"]}),
    )
    out = pa.build_system_instruction(ctx)
    assert out.startswith(pa.SYSTEM_PROMPT)
    assert "User needs support" in out
    assert "User Experience Level: expert - You can use technical terminology" in out
    assert 'User Preferences: {"usage": ["gaming"]}' in out
    assert out.endswith("admit it rather than guessing.")


def test_system_instruction_for_general_context():
    out = pa.build_system_instruction(SessionContext())
    assert "Current Context" not in out
    assert "User Preferences" not in out
    assert "User Experience Level: beginner - Use simpler language" in out


def test_assemble_messages_orders_and_windows_history():
    history = [Message(role="user" if i % 2 == 0 else "assistant", content=f"m{i}") for i in range(14)]
    knowledge = [
        SimpleNamespace(title="PSU sizing", content="Add 30% headroom."),
        SimpleNamespace(title="RAM", content="Use matched kits."),
    ]
    msgs = pa.assemble_messages(
        system_instruction="SYS",
        knowledge=knowledge,
        history=history,
        user_message="new question",
    )
    assert msgs[0] == {"role": "system", "content": "SYS"}
    assert msgs[1]["role"] == "system"
    assert "[Knowledge Base]\nPSU sizing\nAdd 30% headroom." in msgs[1]["content"]
    assert pa.KNOWLEDGE_DELIMITER in msgs[1]["content"]
    assert [m["content"] for m in msgs[2:-1]] == [f"m{i}" for i in range(4, 14)]
    assert msgs[-1] == {"role": "user", "content": "new question"}
    assert all(set(m) == {"role", "content"} for m in msgs)


def test_assemble_messages_without_knowledge_or_history():
    msgs = pa.assemble_messages(
        system_instruction="SYS", knowledge=[], history=[], user_message="hi"
    )
    assert msgs == [
        {"role": "system", "content": "SYS"},
        {"role": "user", "content": "hi"},
    ]
