"""
anthropic_backend.py – Chat streaming through the Anthropic SDK.

Anthropic takes the system prompt as a separate argument, so it is lifted out
of the session history before each request.
"""
from __future__ import annotations

import logging
from typing import Optional

from ...streaming import ChunkReader, IteratorReader
from ..base import SessionConfig

logger = logging.getLogger(__name__)

_DEFAULT_MAX_TOKENS = 4096


class AnthropicBackend:
    def __init__(self, api_key: str, base_url: Optional[str] = None, timeout: float = 60.0) -> None:
        self._api_key = api_key
        self._base_url = base_url or None
        self._timeout = timeout
        self._async_client = None

    def _get_async_client(self):
        if self._async_client is None:
            try:
                import anthropic
            except ImportError:
                raise ImportError("anthropic package is not installed. Run: pip install anthropic")
            self._async_client = anthropic.AsyncAnthropic(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=float(self._timeout),
                max_retries=0,
            )
        return self._async_client

    async def probe(self, timeout: float) -> None:
        # No cheap unauthenticated endpoint; a configured key is the availability signal.
        return None

    async def stream(self, model: str, messages: list[dict], config: SessionConfig) -> ChunkReader:
        client = self._get_async_client()
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        kwargs = {"system": system} if system else {}
        manager = client.messages.stream(
            model=model,
            max_tokens=config.max_tokens or _DEFAULT_MAX_TOKENS,
            messages=[m for m in messages if m["role"] != "system"],
            temperature=config.temperature,
            top_k=config.top_k,
            **kwargs,
        )
        stream = await manager.__aenter__()

        async def tokens():
            async for text in stream.text_stream:
                if text:
                    yield text

        async def close():
            await manager.__aexit__(None, None, None)

        return IteratorReader(tokens(), on_close=close)

    async def aclose(self) -> None:
        if self._async_client is not None:
            await self._async_client.close()
            self._async_client = None
