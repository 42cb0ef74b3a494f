# tests/conftest.py
import asyncio
import logging
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from switchboard.config import Settings
from switchboard.services.chat_service import ChatService
from switchboard.services.provider_manager import ProviderManager
from switchboard.services.providers.base import (
    Availability,
    ChunkMode,
    ModelProvider,
    ProviderConfig,
    ProviderKind,
    Session,
)


class ScriptedReader:
    """ChunkReader that hands out a fixed list of chunks and records how it was closed."""

    def __init__(self, chunks, error: Optional[BaseException] = None, error_at: Optional[int] = None):
        self.chunks = list(chunks)
        self.error = error
        self.error_at = len(self.chunks) if error_at is None else error_at
        self.reads = 0
        self.cancel_calls = 0
        self.release_calls = 0

    async def read(self):
        await asyncio.sleep(0)
        if self.error is not None and self.reads == self.error_at:
            raise self.error
        if self.reads >= len(self.chunks):
            return None
        chunk = self.chunks[self.reads]
        self.reads += 1
        return chunk

    async def cancel(self):
        self.cancel_calls += 1

    async def release(self):
        self.release_calls += 1


class FakeProvider(ModelProvider):
    """Provider whose every outcome is set by the test.

    `events` is a shared list; session create/destroy and dispose append
    (action, provider name, session id) so tests can check ordering.
    """

    def __init__(
        self,
        name: str,
        kind: ProviderKind = ProviderKind.LOCAL,
        available: bool = True,
        chunks=("Hel", "lo", " wor", "ld"),
        chunk_mode: ChunkMode = ChunkMode.DELTA,
        fail_init: bool = False,
        fail_session: bool = False,
        probe_error: Optional[BaseException] = None,
        probe_delay: float = 0.0,
        dispose_error: Optional[BaseException] = None,
        stream_error: Optional[BaseException] = None,
        events: Optional[list] = None,
    ) -> None:
        super().__init__()
        self.name = name
        self.kind = kind
        self.description = f"fake {name}"
        self.chunk_mode = chunk_mode
        self.available = available
        self.chunks = list(chunks)
        self.fail_init = fail_init
        self.fail_session = fail_session
        self.probe_error = probe_error
        self.probe_delay = probe_delay
        self.dispose_error = dispose_error
        self.stream_error = stream_error
        self.events = events if events is not None else []
        self.setup_calls = 0
        self.setup_configs: list[ProviderConfig] = []
        self.teardown_calls = 0
        self.dispose_calls = 0
        self.readers: list[ScriptedReader] = []

    async def _check_availability(self) -> Availability:
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        if self.probe_error is not None:
            raise self.probe_error
        if not self.available:
            return Availability.unavailable(f"{self.name} is switched off")
        return Availability(available=True)

    async def _setup(self, config: ProviderConfig) -> None:
        self.setup_calls += 1
        self.setup_configs.append(config)
        if self.fail_init:
            raise RuntimeError(f"{self.name} setup exploded")

    async def _teardown(self) -> None:
        self.teardown_calls += 1

    async def _open_session(self, session: Session):
        if self.fail_session:
            raise RuntimeError("no room for another session")
        self.events.append(("create", self.name, session.id))
        return None

    async def _close_session(self, session: Session) -> None:
        self.events.append(("destroy", self.name, session.id))

    async def dispose(self) -> None:
        self.dispose_calls += 1
        self.events.append(("dispose", self.name, None))
        await super().dispose()
        if self.dispose_error is not None:
            raise self.dispose_error

    async def _open_stream(self, session: Session, text: str):
        reader = ScriptedReader(self.chunks, error=self.stream_error)
        self.readers.append(reader)
        return reader

    def live_sessions(self) -> int:
        return len(self._sessions)


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_provider(events):
    def factory(name: str, **kwargs) -> FakeProvider:
        kwargs.setdefault("events", events)
        return FakeProvider(name, **kwargs)

    return factory


@pytest.fixture
def settings(tmp_path):
    return Settings(
        local={"cache_dir": str(tmp_path / "models")},
        recovery={"settle_delay": 0, "state_dirs": [str(tmp_path / "models")]},
    )


@pytest.fixture
def manager():
    return ProviderManager(probe_timeout=0.5)


@pytest_asyncio.fixture
async def ready_manager(manager, make_provider):
    """Manager with one local fake provider already active."""
    manager.register_provider(make_provider("alpha"))
    await manager.set_active_provider("alpha")
    yield manager
    await manager.dispose()


@pytest_asyncio.fixture
async def client(ready_manager, settings):
    from switchboard.main import create_app

    chat = ChatService.from_settings(ready_manager, settings)
    app = create_app(settings=settings, manager=ready_manager, chat_service=chat, auto_select=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def caplog_debug(caplog):
    caplog.set_level(logging.DEBUG)
    return caplog
