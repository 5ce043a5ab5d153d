"""
External responder: turns a context transcript into a streamed reply.

The responder is a plain HTTP endpoint that accepts
``{"messages": [...], "provider": ..., "model": ...}`` and answers with a
server-sent event stream::

    data: {"text": "Hel"}
    data: {"text": "lo"}
    data: [DONE]

An ``{"error": "..."}`` event, a non-200 status or a dropped connection all
surface as ``ResponderError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Union

import aiohttp

from .models import ContextMessage

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = os.environ.get("BRANCHFLOW_PROVIDER", "gemini")
DEFAULT_MODELS = {
    "gemini": "gemini-2.5-flash-lite",
    "ollama": "gemma3:270m",
}
RESPONDER_URL = os.environ.get("BRANCHFLOW_RESPONDER_URL", "http://localhost:3000/api/llm")

SSE_DONE_MARKER = "[DONE]"

# Returned by parse_sse_line for the end-of-stream marker, never equal to a delta
SSE_DONE = object()


class ResponderError(RuntimeError):
    """The responder could not produce a reply."""


def resolve_model(provider: Optional[str], model: Optional[str]) -> tuple[str, str]:
    provider = provider or DEFAULT_PROVIDER
    model = model or os.environ.get("BRANCHFLOW_MODEL") or DEFAULT_MODELS.get(provider)
    if not model:
        raise ResponderError(f"No model configured for provider '{provider}'")
    return provider, model


def parse_sse_line(line: str) -> Union[str, object, None]:
    """Text delta carried by one SSE line.

    Returns ``None`` for blank lines, comments, keep-alives and events
    without text.  Returns ``SSE_DONE`` at the end of the stream.  Raises
    ``ResponderError`` for error events.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == SSE_DONE_MARKER:
        return SSE_DONE
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug(f"Skipping unparseable SSE line: {data[:80]}")
        return None
    if not isinstance(event, dict):
        return None
    if event.get("error"):
        raise ResponderError(str(event["error"]))
    text = event.get("text")
    return text if isinstance(text, str) and text else None


class Responder(ABC):
    """Anything that can answer a transcript with streamed text."""

    @abstractmethod
    def stream(
        self,
        messages: list[ContextMessage],
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Yield text deltas in order."""

    async def complete(
        self,
        messages: list[ContextMessage],
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        parts = []
        async for delta in self.stream(messages, provider=provider, model=model):
            parts.append(delta)
        return "".join(parts)


class SSEResponder(Responder):
    """Streams replies from an HTTP endpoint speaking the SSE format above."""

    def __init__(self, url: str = RESPONDER_URL, timeout: float = 300):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def stream(
        self,
        messages: list[ContextMessage],
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        provider, model = resolve_model(provider, model)
        body = {
            "messages": [m.model_dump() for m in messages],
            "provider": provider,
            "model": model,
        }
        logger.info(f"Requesting reply from {provider}/{model} ({len(messages)} messages)")

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.url, json=body) as response:
                    if response.status != 200:
                        detail = (await response.text())[:200]
                        raise ResponderError(f"Responder returned HTTP {response.status}: {detail}")
                    async for raw in response.content:
                        delta = parse_sse_line(raw.decode("utf-8", errors="replace"))
                        if delta is None:
                            continue
                        if delta is SSE_DONE:
                            return
                        yield delta
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Responder request failed: {e}")
            raise ResponderError(f"Responder request failed: {e}") from e
