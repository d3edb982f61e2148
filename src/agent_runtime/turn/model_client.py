"""Streaming model interface and the OpenAI-compatible adapter."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error, request

from agent_runtime.turn.messages import TurnMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentChunk:
    text: str


@dataclass(frozen=True)
class ToolCallChunk:
    id: str
    name: str
    arguments_json: str


@dataclass(frozen=True)
class DoneChunk:
    finish_reason: str | None = None


ModelChunk = ContentChunk | ToolCallChunk | DoneChunk


class ModelClient(Protocol):
    """One generation per call, terminated by a ``DoneChunk``."""

    def stream_chat(
        self,
        messages: Sequence[TurnMessage],
        tools: Sequence[dict[str, Any]],
        options: dict[str, Any] | None = None,
    ) -> Iterator[ModelChunk]: ...


class OpenAIChatStreamClient:
    """Chat completions streaming over plain urllib and server-sent events.

    Connection setup is retried; once bytes start flowing the stream is
    consumed as-is. A stream that closes without ``[DONE]`` yields no
    ``DoneChunk`` so the caller can treat it as a model failure.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is missing")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def stream_chat(
        self,
        messages: Sequence[TurnMessage],
        tools: Sequence[dict[str, Any]],
        options: dict[str, Any] | None = None,
    ) -> Iterator[ModelChunk]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_openai() for message in messages],
            "stream": True,
        }
        if tools:
            payload["tools"] = list(tools)
        for key in ("temperature", "max_tokens", "top_p"):
            if options and options.get(key) is not None:
                payload[key] = options[key]

        response = self._open_with_retry(payload)
        with response:
            yield from parse_sse_lines(
                raw.decode("utf-8", errors="replace") for raw in response
            )

    def _open_with_retry(self, payload: dict[str, Any]):
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._open(payload)
            except (TimeoutError, error.URLError, error.HTTPError) as exc:
                last_error = exc
                logger.warning(
                    "OpenAI stream request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise RuntimeError("LLM request failed with unknown error")
        raise last_error

    def _open(self, payload: dict[str, Any]):
        req = request.Request(
            url=f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "text/event-stream",
            },
        )
        try:
            return request.urlopen(req, timeout=self.timeout_s)
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"OpenAI API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc


def parse_sse_lines(lines: Iterator[str]) -> Iterator[ModelChunk]:
    """Translate chat-completion SSE lines into model chunks.

    Tool-call fragments are accumulated per index and released once the
    choice reports a finish reason (or at ``[DONE]``).
    """
    pending: dict[int, dict[str, str]] = {}
    finish_reason: str | None = None

    for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            yield from _flush(pending)
            yield DoneChunk(finish_reason=finish_reason)
            return

        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed stream event data=%r", data[:200])
            continue
        for choice in event.get("choices", []):
            delta = choice.get("delta") or {}
            text = delta.get("content")
            if isinstance(text, str) and text:
                yield ContentChunk(text=text)
            for fragment in delta.get("tool_calls") or []:
                slot = pending.setdefault(
                    int(fragment.get("index", 0)), {"id": "", "name": "", "arguments": ""}
                )
                function = fragment.get("function") or {}
                slot["id"] = fragment.get("id") or slot["id"]
                slot["name"] = function.get("name") or slot["name"]
                slot["arguments"] += function.get("arguments") or ""
            if choice.get("finish_reason"):
                finish_reason = choice["finish_reason"]
                yield from _flush(pending)


def _flush(pending: dict[int, dict[str, str]]) -> Iterator[ToolCallChunk]:
    for index in sorted(pending):
        slot = pending[index]
        yield ToolCallChunk(
            id=slot["id"] or f"call_{index}",
            name=slot["name"],
            arguments_json=slot["arguments"] or "{}",
        )
    pending.clear()


def build_model_client(
    *,
    provider: str,
    api_key: str,
    model: str,
    base_url: str,
    timeout_s: float,
    max_retries: int,
    backoff_s: float,
) -> ModelClient | None:
    if provider.lower().strip() != "openai" or not api_key:
        return None
    return OpenAIChatStreamClient(
        api_key=api_key,
        model=model,
        base_url=base_url,
        timeout_s=timeout_s,
        max_retries=max_retries,
        backoff_s=backoff_s,
    )
