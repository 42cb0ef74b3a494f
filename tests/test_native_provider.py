# tests/test_native_provider.py
import pytest

from switchboard.errors import InitializationError
from switchboard.services.providers import NativeProvider
from switchboard.services.providers.base import ChunkMode, SessionConfig

from conftest import ScriptedReader


class FakePlatformSession:
    def __init__(self, snapshots):
        self.snapshots = snapshots
        self.prompts = []
        self.destroyed = False
        self.readers = []

    def prompt_streaming(self, text):
        self.prompts.append(text)
        reader = ScriptedReader(self.snapshots)
        self.readers.append(reader)
        return reader

    async def destroy(self):
        self.destroyed = True

    async def clone(self):
        return FakePlatformSession(self.snapshots)


class FakePlatform:
    def __init__(self, status="readily", snapshots=("Hi", "Hi there", "Hi there!")):
        self.status = status
        self.snapshots = list(snapshots)
        self.created = []
        self.download = None

    async def capabilities(self):
        return self.status

    async def create(self, *, temperature, top_k, system_prompt=None, monitor=None):
        if self.download and monitor is not None:
            for loaded in self.download:
                monitor(loaded, self.download[-1])
        session = FakePlatformSession(self.snapshots)
        self.created.append((temperature, top_k, system_prompt))
        return session


@pytest.mark.asyncio
async def test_unavailable_without_platform_binding():
    provider = NativeProvider()
    availability = await provider.check_availability()
    assert availability.available is False
    assert "platform" in availability.reason.lower()


@pytest.mark.asyncio
async def test_availability_states():
    assert (await NativeProvider(FakePlatform("readily")).check_availability()).available
    after = await NativeProvider(FakePlatform("after-download")).check_availability()
    assert after.available and after.requires_download
    assert not (await NativeProvider(FakePlatform("no")).check_availability()).available


@pytest.mark.asyncio
async def test_initialize_refuses_unsupported_device():
    with pytest.raises(InitializationError):
        await NativeProvider(FakePlatform("no")).initialize()


@pytest.mark.asyncio
async def test_full_replace_stream_becomes_deltas():
    platform = FakePlatform()
    provider = NativeProvider(platform)
    assert provider.chunk_mode is ChunkMode.FULL_REPLACE

    await provider.initialize()
    session = await provider.create_session(SessionConfig(temperature=0.3, top_k=8, system_prompt="terse"))
    deltas = [d async for d in provider.prompt_streaming(session, "hello")]

    assert deltas == ["Hi", " there", "!"]
    assert platform.created == [(0.3, 8, "terse")]
    assert session.state.prompts == ["hello"]
    assert session.state.readers[0].release_calls == 1


@pytest.mark.asyncio
async def test_download_progress_is_pollable():
    platform = FakePlatform("after-download")
    platform.download = [0, 50, 100]
    provider = NativeProvider(platform)

    await provider.initialize()
    assert provider.get_progress().phase == "downloading"

    await provider.create_session(SessionConfig())
    progress = provider.get_progress()
    assert progress.phase == "ready"
    assert progress.percentage == 100


@pytest.mark.asyncio
async def test_destroy_and_clone_sessions():
    provider = NativeProvider(FakePlatform())
    await provider.initialize()
    session = await provider.create_session(SessionConfig())
    [d async for d in provider.prompt_streaming(session, "hello")]

    clone = await provider.clone_session(session)
    assert clone.id != session.id
    assert clone.history == session.history
    assert clone.state is not session.state

    platform_session = session.state
    await provider.destroy_session(session)
    assert platform_session.destroyed
    assert provider.get_session(clone.id) is clone
