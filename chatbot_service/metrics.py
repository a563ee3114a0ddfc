from __future__ import annotations

from prometheus_client import (
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

REQUEST_COUNT = Counter(
    "chat_api_requests_total",
    "Total API requests",
    ["path", "method", "status"],
)

# A turn is dominated by the completion call, so buckets stretch to the
# provider timeout rather than stopping at typical web latencies.
_LATENCY_BUCKETS = (
    0.005, 0.025, 0.100, 0.250, 0.500,
    1.0, 2.5, 5.0, 10.0,
    20.0, 40.0, 90.0,
)

REQUEST_LATENCY = Histogram(
    "chat_api_request_latency_seconds",
    "API request latency in seconds",
    ["path", "method"],
    buckets=_LATENCY_BUCKETS,
)

TURN_COUNT = Counter(
    "chat_turns_total",
    "Chat turns by terminal state",
    ["outcome"],
)

TURN_LATENCY = Histogram(
    "chat_turn_latency_seconds",
    "End-to-end latency of one chat turn",
    buckets=_LATENCY_BUCKETS,
)

STAGE_FAILURES = Counter(
    "chat_stage_failures_total",
    "Pipeline failures by the state the turn was in",
    ["stage"],
)

MODERATION_REJECTIONS = Counter(
    "chat_moderation_rejections_total",
    "Inbound messages rejected by the moderation gate",
    ["reason"],
)

LLM_RETRIES = Counter(
    "chat_llm_retries_total",
    "Completion attempts that failed and were retried",
)

LLM_TOKENS = Counter(
    "chat_llm_tokens_total",
    "Tokens reported by the completion provider",
    ["kind"],
)

KNOWLEDGE_FAILURES = Counter(
    "chat_knowledge_failures_total",
    "Knowledge retrieval errors neutralized to an empty result",
)

CACHE_ERRORS = Counter(
    "chat_cache_errors_total",
    "Session cache operations that failed and fell back to the durable store",
    ["op"],
)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
