"""
provider_manager.py – registry, availability probing, failover and switching.

The active provider and its session live in one immutable ActiveSelection that
is only ever replaced by _transition(). A switch runs under a lock and in a
fixed order:

  initialize target → destroy old session (→ dispose old provider)
  → create new session → publish new selection

so a reader of get_active_provider() sees either the old selection or the
new one, and never a provider holding two live sessions.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..config import Settings
from ..errors import ProbeTimeoutError, ProviderError, ProviderNotFoundError, ProviderUnavailableError
from ..utils.timeouts import with_timeout
from .providers import build_providers
from .providers.base import (
    Availability,
    ModelProvider,
    ProviderConfig,
    ProviderDescriptor,
    ProviderKind,
    Session,
    SessionConfig,
)

logger = logging.getLogger(__name__)

ProviderChangeCallback = Callable[[Optional[ModelProvider]], None]


@dataclass(frozen=True)
class ActiveSelection:
    provider: Optional[ModelProvider] = None
    session: Optional[Session] = None


EMPTY_SELECTION = ActiveSelection()


@dataclass(frozen=True)
class ProviderStatus:
    descriptor: ProviderDescriptor
    availability: Availability

    def to_dict(self) -> dict:
        return {**self.descriptor.to_dict(), **self.availability.to_dict()}


class ProviderManager:
    def __init__(
        self,
        default_session_config: Optional[SessionConfig] = None,
        preferred: Optional[str] = None,
        allow_remote_auto_select: bool = False,
        probe_timeout: Optional[float] = None,
    ) -> None:
        self.default_session_config = default_session_config or SessionConfig()
        self.preferred = preferred
        self.allow_remote_auto_select = allow_remote_auto_select
        self.probe_timeout = probe_timeout
        self.last_failures: dict[str, str] = {}

        self._providers: dict[str, ModelProvider] = {}
        self._priorities: dict[str, int] = {}
        self._selection: ActiveSelection = EMPTY_SELECTION
        self._switch_lock = asyncio.Lock()
        self._listeners: list[ProviderChangeCallback] = []

    @classmethod
    def from_settings(cls, settings: Settings, providers: Optional[list[ModelProvider]] = None) -> "ProviderManager":
        """Build a manager from config and register *providers* (default: every enabled one)."""
        manager = cls(
            default_session_config=SessionConfig(**settings.generation.model_dump()),
            preferred=settings.selection.default_provider,
            allow_remote_auto_select=settings.selection.allow_remote_auto_select,
            probe_timeout=settings.selection.probe_timeout,
        )
        for provider in providers if providers is not None else build_providers(settings):
            cfg = settings.providers.get(provider.name)
            manager.register_provider(provider, priority=cfg.priority if cfg is not None else None)
        return manager

    # ── Registry ──────────────────────────────────────────────────────────────

    def register_provider(self, provider: ModelProvider, priority: Optional[int] = None) -> None:
        """Add *provider*; an existing entry with the same name is replaced in place."""
        if provider.name in self._providers:
            logger.info("Replacing registered provider %s", provider.name)
        self._providers[provider.name] = provider
        self._priorities[provider.name] = priority if priority is not None else len(self._priorities)

    def get_provider(self, name: str) -> Optional[ModelProvider]:
        return self._providers.get(name)

    @property
    def providers(self) -> list[ModelProvider]:
        return list(self._providers.values())

    # ── Probing ───────────────────────────────────────────────────────────────

    async def _probe(self, provider: ModelProvider) -> Availability:
        try:
            return await with_timeout(
                provider.check_availability(),
                self.probe_timeout,
                f"{provider.name} availability probe",
                provider=provider.name,
            )
        except ProbeTimeoutError as exc:
            logger.warning("%s", exc)
            return Availability.unavailable(str(exc))
        except Exception as exc:
            logger.warning("Availability check for %s raised: %s", provider.name, exc)
            return Availability.unavailable(str(exc) or type(exc).__name__)

    async def detect_providers(self) -> list[ProviderStatus]:
        """Probe every provider; one result per provider, in registration order."""
        providers = list(self._providers.values())
        results = await asyncio.gather(*(self._probe(p) for p in providers))
        return [ProviderStatus(p.descriptor, availability) for p, availability in zip(providers, results)]

    # ── Selection ─────────────────────────────────────────────────────────────

    def get_active_provider(self) -> Optional[ModelProvider]:
        return self._selection.provider

    @property
    def active_session(self) -> Optional[Session]:
        return self._selection.session

    @property
    def selection(self) -> ActiveSelection:
        return self._selection

    def _candidates(self) -> list[ModelProvider]:
        """Auto-select order: preferred, then local before remote, then priority, then registration."""
        order = {name: i for i, name in enumerate(self._providers)}
        ranked = sorted(
            self._providers.values(),
            key=lambda p: (p.kind is not ProviderKind.LOCAL, self._priorities[p.name], order[p.name]),
        )
        preferred = self._providers.get(self.preferred) if self.preferred else None
        candidates = [preferred] if preferred is not None else []
        for provider in ranked:
            if provider is preferred:
                continue
            if provider.kind is ProviderKind.REMOTE_API and not self.allow_remote_auto_select:
                continue
            candidates.append(provider)
        return candidates

    async def auto_select_provider(self) -> Optional[ModelProvider]:
        """Activate the first candidate that is available and initializes.

        Returns None (and clears the active selection) when none succeeds.
        Per-candidate failure reasons are left in `last_failures`.
        """
        async with self._switch_lock:
            failures: dict[str, str] = {}
            for provider in self._candidates():
                availability = await self._probe(provider)
                if not availability.available:
                    failures[provider.name] = availability.reason or "unavailable"
                    continue
                try:
                    await self._activate(provider, None)
                except ProviderError as exc:
                    logger.warning("Failed to activate provider %s: %s", provider.name, exc)
                    failures[provider.name] = str(exc)
                    continue
                self.last_failures = failures
                logger.info("Auto-selected provider %s", provider.name)
                return provider

            self.last_failures = failures
            await self._release_current()
            self._transition(EMPTY_SELECTION)
            logger.warning("No provider could be selected: %s", failures or "none registered")
            return None

    async def set_active_provider(
        self,
        name: str,
        session_config: Optional[SessionConfig] = None,
    ) -> ModelProvider:
        """Explicitly switch to *name*.

        Raises:
            ProviderNotFoundError: *name* is not registered (selection unchanged)
            ProviderUnavailableError: the probe said no (selection unchanged)
            InitializationError: the target failed to set up (selection unchanged,
                unless reloading the active provider already dropped its session)
            SessionError: the new session could not be created (selection cleared)
        """
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name)

        async with self._switch_lock:
            availability = await self._probe(provider)
            if not availability.available:
                raise ProviderUnavailableError(
                    f"Provider '{name}' is not available: {availability.reason or 'unknown reason'}",
                    provider=name,
                )
            await self._activate(provider, session_config)

        logger.info("Active provider is now %s", name)
        return provider

    async def reinitialize_active(self) -> bool:
        """Tear down and rebuild the active provider and its session (used for recovery).

        If the rebuild fails the selection is cleared before the error propagates.
        """
        async with self._switch_lock:
            current = self._selection
            if current.provider is None:
                logger.warning("No active provider to reinitialize")
                return False
            config = current.session.config if current.session is not None else None
            try:
                await current.provider.dispose()
                await self._activate(current.provider, config)
            except Exception:
                self._drop_stale_selection()
                raise
        logger.info("Reinitialized provider %s", current.provider.name)
        return True

    async def reconfigure_provider(
        self,
        name: str,
        change: Callable[[ModelProvider], Awaitable[None]],
    ) -> ModelProvider:
        """Apply *change* (e.g. a setter that disposes) to a registered provider.

        Provider setters that dispose must go through here when the provider
        may be active. An active provider is brought back up with the same
        session config; if its session did not survive a failure, the
        selection is cleared and the error propagates.
        """
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name)

        async with self._switch_lock:
            current = self._selection
            was_active = current.provider is provider
            config = current.session.config if was_active and current.session is not None else None
            try:
                await change(provider)
                if was_active:
                    if config is not None and config.model_id:
                        # The change may have picked a different model.
                        model_id = getattr(provider, "current_model_id", None) or config.model_id
                        config = config.model_copy(update={"model_id": model_id})
                    await self._activate(provider, config)
            except Exception:
                self._drop_stale_selection()
                raise
        logger.info("Reconfigured provider %s", name)
        return provider

    async def _activate(self, provider: ModelProvider, session_config: Optional[SessionConfig]) -> None:
        session_config = session_config or self.default_session_config
        provider_config = (
            ProviderConfig(model_id=session_config.model_id) if session_config.model_id else None
        )
        # Nothing below may run until the target is known to be usable.
        try:
            await provider.initialize(provider_config)
        except Exception:
            # A reload for a new model may already have dropped the published session.
            self._drop_stale_selection()
            raise

        previous = self._selection.provider
        await self._release_current()
        if previous is not None and previous is not provider:
            await previous.dispose()

        try:
            session = await provider.create_session(session_config)
        except Exception:
            self._transition(EMPTY_SELECTION)
            raise
        self._transition(ActiveSelection(provider, session))

    async def _release_current(self) -> None:
        current = self._selection
        if current.provider is not None and current.session is not None:
            await current.provider.destroy_session(current.session)

    def _drop_stale_selection(self) -> None:
        """Clear the selection if its session no longer exists on its provider."""
        current = self._selection
        if current.provider is None:
            return
        if current.session is None or current.provider.get_session(current.session.id) is None:
            logger.warning("Active session on %s is gone; clearing selection", current.provider.name)
            self._transition(EMPTY_SELECTION)

    def _transition(self, selection: ActiveSelection) -> None:
        """The only place the active selection changes."""
        changed = selection.provider is not self._selection.provider
        self._selection = selection
        if changed:
            self._notify(selection.provider)

    # ── Listeners ─────────────────────────────────────────────────────────────

    def on_provider_change(self, callback: ProviderChangeCallback) -> Callable[[], None]:
        """Subscribe to active-provider changes; returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, provider: Optional[ModelProvider]) -> None:
        for callback in list(self._listeners):
            try:
                callback(provider)
            except Exception as exc:
                logger.error("Provider change listener failed: %s", exc)

    # ── Teardown ──────────────────────────────────────────────────────────────

    async def dispose(self) -> None:
        """Dispose every registered provider; one failure never stops the rest."""
        async with self._switch_lock:
            self._transition(EMPTY_SELECTION)
            failures: list[str] = []
            for name, provider in list(self._providers.items()):
                try:
                    await provider.dispose()
                except Exception as exc:
                    logger.warning("Failed to dispose provider %s: %s", name, exc)
                    failures.append(name)
            if failures:
                logger.warning("%d provider(s) failed to dispose: %s", len(failures), ", ".join(failures))
