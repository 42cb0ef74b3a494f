"""
chat_service.py – application-side glue between HTTP requests and providers.

  ChatService.stream_reply()  – stream a reply through the active session
  ChatService.cancel()        – cancel an in-flight request by id

Every request gets its own CancellationToken. A ResourceLossError from the
provider is handed to the RecoverySupervisor before it propagates, and a reply
that finishes normally re-arms the recovery budget.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import aclosing
from typing import AsyncIterator, Optional

from ..config import Settings
from ..errors import ProviderUnavailableError, ResourceLossError
from .provider_manager import ProviderManager
from .providers.base import SessionConfig
from .recovery import RecoverySupervisor
from .streaming import CancellationToken

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(self, manager: ProviderManager, supervisor: Optional[RecoverySupervisor] = None) -> None:
        self.manager = manager
        self.supervisor = supervisor or RecoverySupervisor(
            self.recover_active_provider, on_exhausted=self.on_recovery_exhausted
        )
        self._requests: dict[str, CancellationToken] = {}

    @classmethod
    def from_settings(cls, manager: ProviderManager, settings: Settings) -> "ChatService":
        service = cls(manager)
        service.supervisor = RecoverySupervisor(
            service.recover_active_provider,
            on_exhausted=service.on_recovery_exhausted,
            on_reset=manager.dispose,
            settle_delay=settings.recovery.settle_delay,
            state_dirs=settings.recovery.state_dirs,
        )
        return service

    async def recover_active_provider(self) -> bool:
        """Default recovery callback: rebuild the active provider and its session."""
        return await self.manager.reinitialize_active()

    def on_recovery_exhausted(self, reason: str) -> None:
        """Recovery gave up: stop every stream still running on the lost device."""
        provider = self.manager.get_active_provider()
        logger.error(
            "Manual reset required after %s on %s; cancelling %d in-flight request(s)",
            reason, provider.name if provider else "no provider", len(self._requests),
        )
        for token in list(self._requests.values()):
            token.cancel("recovery exhausted")

    # ── Requests ──────────────────────────────────────────────────────────────

    def open_request(self, request_id: Optional[str] = None) -> tuple[str, CancellationToken]:
        request_id = request_id or uuid.uuid4().hex
        if request_id in self._requests:
            raise ValueError(f"Request '{request_id}' is already in flight")
        token = CancellationToken()
        self._requests[request_id] = token
        return request_id, token

    def cancel(self, request_id: str, reason: str = "cancelled by client") -> bool:
        token = self._requests.get(request_id)
        if token is None:
            return False
        return token.cancel(reason)

    @property
    def in_flight(self) -> list[str]:
        return list(self._requests)

    # ── Streaming ─────────────────────────────────────────────────────────────

    async def stream_reply(self, text: str, request_id: Optional[str] = None) -> AsyncIterator[str]:
        """Yield reply deltas for *text* from the active session.

        If *request_id* was registered with open_request() its token is used;
        otherwise a fresh one is registered for the duration of the stream.
        """
        if request_id is None or request_id not in self._requests:
            request_id, token = self.open_request(request_id)
        else:
            token = self._requests[request_id]

        try:
            selection = self.manager.selection
            if selection.provider is None or selection.session is None:
                raise ProviderUnavailableError("No active provider. Select one first.")

            try:
                async with aclosing(
                    selection.provider.prompt_streaming(selection.session, text, token)
                ) as stream:
                    async for delta in stream:
                        yield delta
            except ResourceLossError as exc:
                logger.warning("Resource loss on %s: %s", exc.provider or selection.provider.name, exc)
                await self.supervisor.handle_loss("resource-loss")
                raise

            self.supervisor.reset_counter()
        finally:
            self._requests.pop(request_id, None)

    async def new_conversation(self, config: Optional[SessionConfig] = None) -> None:
        """Replace the active session with a fresh one on the same provider."""
        provider = self.manager.get_active_provider()
        if provider is None:
            raise ProviderUnavailableError("No active provider. Select one first.")
        await self.manager.set_active_provider(provider.name, config)
