from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator

import httpx

from ..config import LLMConfig
from ..errors import ExternalServiceError
from ..metrics import LLM_RETRIES, LLM_TOKENS
from ..utils import get_logger

logger = get_logger("chat_llm")

_RETRY_BASE_DELAY = 1.0  # seconds; delay = base * 2 ** attempt, attempt starting at 1


@dataclass(frozen=True)
class Completion:
    content: str
    model: str
    tokens: dict[str, int] = field(default_factory=dict)
    finish_reason: str | None = None
    response_time_ms: int = 0

    def to_metadata(self) -> dict[str, Any]:
        return {
            "tokens": dict(self.tokens),
            "model": self.model,
            "response_time_ms": self.response_time_ms,
        }


def _classify(exc: Exception, action: str) -> ExternalServiceError:
    if isinstance(exc, ExternalServiceError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return ExternalServiceError(
            f"Completion provider {action} failed with status {status}",
            upstream_status=status,
        )
    return ExternalServiceError(f"Completion provider {action} unavailable")


def _parse_completion(data: dict[str, Any], default_model: str, started: float) -> Completion:
    choice = (data.get("choices") or [{}])[0]
    usage = data.get("usage") or {}
    # Some providers send null counters.
    tokens = {
        "prompt": int(usage.get("prompt_tokens") or 0),
        "completion": int(usage.get("completion_tokens") or 0),
        "total": int(usage.get("total_tokens") or 0),
    }
    return Completion(
        content=str((choice.get("message") or {}).get("content") or "").strip(),
        model=str(data.get("model") or default_model),
        tokens=tokens,
        finish_reason=choice.get("finish_reason"),
        response_time_ms=int((time.perf_counter() - started) * 1000),
    )


class CompletionClient:
    """Async client for an OpenAI-compatible chat-completion provider.

    Holds one pooled ``httpx.AsyncClient`` created lazily and released with
    ``aclose`` at shutdown. Process-wide defaults come from ``LLMConfig``;
    any call may override ``model``, ``max_tokens`` or ``temperature``.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or LLMConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                headers=headers,
                transport=self._transport,
                limits=httpx.Limits(
                    max_connections=20,
                    max_keepalive_connections=10,
                    keepalive_expiry=30.0,
                ),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _payload(
        self, messages: list[dict[str, str]], options: dict[str, Any] | None, *, stream: bool
    ) -> dict[str, Any]:
        opts = options or {}
        return {
            "model": opts.get("model", self.config.model),
            "messages": messages,
            "max_tokens": opts.get("max_tokens", self.config.max_tokens),
            "temperature": opts.get("temperature", self.config.temperature),
            "stream": stream,
        }

    async def complete(
        self, messages: list[dict[str, str]], options: dict[str, Any] | None = None
    ) -> Completion:
        payload = self._payload(messages, options, stream=False)
        started = time.perf_counter()
        try:
            response = await self._get_client().post(
                f"{self.base_url}/chat/completions", json=payload
            )
            response.raise_for_status()
            data = response.json()
        except Exception as exc:
            logger.error("Completion call failed: %s", exc)
            raise _classify(exc, "completion") from exc

        try:
            completion = _parse_completion(data, payload["model"], started)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as exc:
            logger.error("Malformed completion payload: %s", exc)
            raise ExternalServiceError(
                "Completion provider returned a malformed response", status_code=502
            ) from exc
        LLM_TOKENS.labels(kind="prompt").inc(completion.tokens["prompt"])
        LLM_TOKENS.labels(kind="completion").inc(completion.tokens["completion"])
        return completion

    async def complete_with_retry(
        self,
        messages: list[dict[str, str]],
        options: dict[str, Any] | None = None,
        max_attempts: int | None = None,
    ) -> Completion:
        """Retry ``complete`` with exponential backoff on provider failures.

        Waits ``2 ** attempt`` seconds after failed attempt ``attempt``
        (2s, 4s, ...) and re-raises the last error once attempts run out.
        """
        attempts = max_attempts or self.config.max_attempts
        last_exc: ExternalServiceError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.complete(messages, options)
            except ExternalServiceError as exc:
                last_exc = exc
                if attempt < attempts:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    LLM_RETRIES.inc()
                    logger.warning(
                        "Completion attempt %d/%d failed: %s. Retrying in %.1fs",
                        attempt, attempts, exc.message, delay,
                    )
                    await asyncio.sleep(delay)
        logger.error("Completion failed after %d attempts", attempts)
        assert last_exc is not None
        raise last_exc

    async def stream(
        self, messages: list[dict[str, str]], options: dict[str, Any] | None = None
    ) -> AsyncGenerator[str, None]:
        """Yield content fragments as the provider sends them.

        Closing the generator early exits the ``client.stream`` context and
        releases the connection. Failures surface as ``ExternalServiceError``.
        """
        payload = self._payload(messages, options, stream=True)
        try:
            async with self._get_client().stream(
                "POST", f"{self.base_url}/chat/completions", json=payload
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    delta = ((chunk.get("choices") or [{}])[0].get("delta") or {})
                    token = delta.get("content")
                    if token:
                        yield token
        except Exception as exc:
            logger.error("Completion stream failed: %s", exc)
            raise _classify(exc, "stream") from exc

    async def embed(self, text: str) -> list[float]:
        try:
            response = await self._get_client().post(
                f"{self.base_url}/embeddings",
                json={"model": self.config.embed_model, "input": text},
            )
            response.raise_for_status()
            data = response.json()
        except Exception as exc:
            logger.error("Embedding call failed: %s", exc)
            raise _classify(exc, "embedding") from exc
        items = data.get("data") or []
        if not items:
            raise ExternalServiceError("Completion provider returned no embedding")
        return [float(x) for x in items[0].get("embedding") or []]

    async def health(self) -> bool:
        try:
            response = await self._get_client().get(f"{self.base_url}/models")
            return response.status_code == 200
        except Exception:
            return False
