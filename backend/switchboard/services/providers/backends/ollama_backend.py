"""
ollama_backend.py – Chat streaming against the native Ollama REST API.

  POST /api/chat  – streaming chat (stream=True, NDJSON)
  GET  /api/tags  – list local models (also the availability probe)
"""
from __future__ import annotations

import json
import logging

import httpx

from ....errors import StreamingError
from ...streaming import ChunkReader, IteratorReader
from ..base import SessionConfig

logger = logging.getLogger(__name__)


class OllamaBackend:
    def __init__(self, base_url: str, timeout: float = 120.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def probe(self, timeout: float) -> None:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(f"{self._base_url}/api/tags")
            resp.raise_for_status()

    async def list_models(self) -> list[str]:
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self._base_url}/api/tags")
                resp.raise_for_status()
            return [m["name"] for m in resp.json().get("models", [])]
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.debug("Ollama list_models failed: %s", exc)
            return []

    async def stream(self, model: str, messages: list[dict], config: SessionConfig) -> ChunkReader:
        options = {"temperature": config.temperature, "top_k": config.top_k}
        if config.max_tokens:
            options["num_predict"] = config.max_tokens
        payload = {"model": model, "messages": messages, "stream": True, "options": options}
        client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=10.0))

        async def tokens():
            async with client.stream("POST", f"{self._base_url}/api/chat", json=payload) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed Ollama line: %r", line[:80])
                        continue
                    if data.get("error"):
                        raise StreamingError(f"Ollama error: {data['error']}", provider="ollama")
                    token = (data.get("message") or {}).get("content", "")
                    if token:
                        yield token
                    if data.get("done"):
                        break

        return IteratorReader(tokens(), on_close=client.aclose)

    async def aclose(self) -> None:
        pass
