"""
openai_backend.py – Chat streaming through the official OpenAI SDK (>=1.0).

Also serves OpenAI-compatible servers (LM Studio, LocalAI, vLLM …) by pointing
base_url at them.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from ...streaming import ChunkReader, IteratorReader
from ..base import SessionConfig

logger = logging.getLogger(__name__)


class OpenAIBackend:
    def __init__(self, api_key: str, base_url: Optional[str] = None, timeout: float = 60.0) -> None:
        self._api_key = api_key
        self._base_url = base_url or None
        self._timeout = timeout
        self._async_client = None  # lazy

    def _get_async_client(self):
        if self._async_client is None:
            try:
                import openai
            except ImportError:
                raise ImportError("openai package is not installed. Run: pip install openai")
            self._async_client = openai.AsyncOpenAI(
                # OpenAI-compatible local servers accept any key, but the SDK wants one
                api_key=self._api_key or "not-needed",
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._async_client

    async def probe(self, timeout: float) -> None:
        """Raise if the endpoint does not answer GET /models."""
        url = f"{(self._base_url or 'https://api.openai.com/v1').rstrip('/')}/models"
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()

    async def stream(self, model: str, messages: list[dict], config: SessionConfig) -> ChunkReader:
        client = self._get_async_client()
        kwargs = {}
        if config.max_tokens:
            kwargs["max_tokens"] = config.max_tokens
        stream = await client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=config.temperature,
            stream=True,
            **kwargs,
        )

        async def tokens():
            async for chunk in stream:
                if not chunk.choices:
                    continue
                token = chunk.choices[0].delta.content
                if token:
                    yield token

        return IteratorReader(tokens(), on_close=stream.close)

    async def aclose(self) -> None:
        if self._async_client is not None:
            await self._async_client.close()
            self._async_client = None
