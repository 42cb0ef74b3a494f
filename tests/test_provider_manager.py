# tests/test_provider_manager.py
import asyncio

import pytest

from switchboard.config import Settings
from switchboard.errors import (
    InitializationError,
    ProviderNotFoundError,
    ProviderUnavailableError,
    SessionError,
)
from switchboard.services.provider_manager import ProviderManager
from switchboard.services.providers import LocalGPUProvider, NativeProvider, RemoteAPIProvider
from switchboard.services.providers.base import ProviderKind, SessionConfig


@pytest.mark.asyncio
async def test_detect_returns_one_result_per_provider_in_order(manager, make_provider):
    manager.register_provider(make_provider("a"))
    manager.register_provider(make_provider("b", probe_error=RuntimeError("boom")))
    manager.register_provider(make_provider("c", available=False))
    manager.register_provider(make_provider("d", probe_delay=5.0))
    manager.register_provider(make_provider("e"))

    results = await manager.detect_providers()

    assert [r.descriptor.name for r in results] == ["a", "b", "c", "d", "e"]
    assert [r.availability.available for r in results] == [True, False, False, False, True]
    assert "boom" in results[1].availability.reason
    assert "timed out" in results[3].availability.reason


def test_register_same_name_replaces_entry(manager, make_provider):
    first, replacement = make_provider("a"), make_provider("a")
    manager.register_provider(first)
    manager.register_provider(make_provider("b"))
    manager.register_provider(replacement)
    assert manager.get_provider("a") is replacement
    assert [p.name for p in manager.providers] == ["a", "b"]


@pytest.mark.asyncio
async def test_auto_select_skips_failures_and_is_deterministic(manager, make_provider):
    manager.register_provider(make_provider("remote", kind=ProviderKind.REMOTE_API), priority=0)
    manager.register_provider(make_provider("down", available=False), priority=1)
    manager.register_provider(make_provider("broken", fail_init=True), priority=2)
    manager.register_provider(make_provider("good"), priority=3)
    manager.register_provider(make_provider("also-good"), priority=3)

    picks = [await manager.auto_select_provider() for _ in range(3)]

    assert {p.name for p in picks} == {"good"}
    assert manager.get_active_provider().name == "good"
    assert set(manager.last_failures) == {"down", "broken"}
    assert manager.get_provider("good").live_sessions() == 1


@pytest.mark.asyncio
async def test_auto_select_returns_none_without_local_candidates(manager, make_provider):
    manager.register_provider(make_provider("remote", kind=ProviderKind.REMOTE_API))
    manager.register_provider(make_provider("down", available=False))

    assert await manager.auto_select_provider() is None
    assert await manager.auto_select_provider() is None
    assert manager.get_active_provider() is None
    assert manager.get_provider("remote").setup_calls == 0


@pytest.mark.asyncio
async def test_auto_select_remote_needs_opt_in(make_provider):
    opted_in = ProviderManager(allow_remote_auto_select=True)
    opted_in.register_provider(make_provider("remote", kind=ProviderKind.REMOTE_API))
    opted_in.register_provider(make_provider("local", available=False))
    assert (await opted_in.auto_select_provider()).name == "remote"

    preferred = ProviderManager(preferred="remote")
    preferred.register_provider(make_provider("local"))
    preferred.register_provider(make_provider("remote", kind=ProviderKind.REMOTE_API))
    assert (await preferred.auto_select_provider()).name == "remote"


@pytest.mark.asyncio
async def test_local_providers_ranked_by_priority_then_registration(manager, make_provider):
    manager.register_provider(make_provider("late"), priority=5)
    manager.register_provider(make_provider("first-tie"), priority=1)
    manager.register_provider(make_provider("second-tie"), priority=1)
    assert (await manager.auto_select_provider()).name == "first-tie"


@pytest.mark.asyncio
async def test_switch_to_unregistered_leaves_selection(ready_manager):
    before = ready_manager.selection
    with pytest.raises(ProviderNotFoundError):
        await ready_manager.set_active_provider("unregistered-name")
    assert ready_manager.selection is before
    assert ready_manager.get_active_provider().name == "alpha"


@pytest.mark.asyncio
async def test_switch_to_unavailable_or_broken_leaves_selection(ready_manager, make_provider):
    ready_manager.register_provider(make_provider("down", available=False))
    ready_manager.register_provider(make_provider("broken", fail_init=True))
    before = ready_manager.selection

    with pytest.raises(ProviderUnavailableError):
        await ready_manager.set_active_provider("down")
    with pytest.raises(InitializationError):
        await ready_manager.set_active_provider("broken")

    assert ready_manager.selection is before
    assert ready_manager.get_provider("alpha").live_sessions() == 1


@pytest.mark.asyncio
async def test_switch_destroys_old_session_before_creating_new(manager, make_provider, events):
    a, b = make_provider("A"), make_provider("B")
    manager.register_provider(a)
    manager.register_provider(b)
    observed = []

    def watch(provider):
        # Called at publish time: the published provider owns exactly one session
        # and nobody else holds one.
        observed.append((provider.name, a.live_sessions(), b.live_sessions()))

    manager.on_provider_change(watch)
    await manager.set_active_provider("A")
    a_session = manager.active_session
    await manager.set_active_provider("B")

    creates_b = events.index(("create", "B", manager.active_session.id))
    destroys_a = events.index(("destroy", "A", a_session.id))
    assert destroys_a < creates_b
    assert observed == [("A", 1, 0), ("B", 0, 1)]
    assert manager.get_active_provider() is b
    assert a.dispose_calls == 1


@pytest.mark.asyncio
async def test_readers_never_see_half_switched_state(manager, make_provider):
    a, b = make_provider("A"), make_provider("B")
    manager.register_provider(a)
    manager.register_provider(b)
    await manager.set_active_provider("A")

    seen = []
    stop = asyncio.Event()

    async def reader():
        while not stop.is_set():
            selection = manager.selection
            provider = selection.provider
            if provider is not None:
                seen.append((provider.name, len(provider.sessions), selection.session is not None))
            await asyncio.sleep(0)

    task = asyncio.create_task(reader())
    await manager.set_active_provider("B")
    await manager.set_active_provider("A")
    stop.set()
    await task

    assert seen
    assert all(live <= 1 for _name, live, _has in seen)


@pytest.mark.asyncio
async def test_session_failure_after_destroy_clears_selection(ready_manager, make_provider):
    ready_manager.register_provider(make_provider("nosession", fail_session=True))
    with pytest.raises(SessionError):
        await ready_manager.set_active_provider("nosession")
    assert ready_manager.get_active_provider() is None
    assert ready_manager.active_session is None


@pytest.mark.asyncio
async def test_switch_uses_given_session_config(ready_manager):
    await ready_manager.set_active_provider("alpha", SessionConfig(temperature=0.1, top_k=5))
    assert ready_manager.active_session.config.temperature == 0.1
    assert ready_manager.get_provider("alpha").live_sessions() == 1


@pytest.mark.asyncio
async def test_change_listener_unsubscribe_and_failures(manager, make_provider):
    manager.register_provider(make_provider("A"))
    manager.register_provider(make_provider("B"))
    calls = []

    def broken(provider):
        raise RuntimeError("listener bug")

    manager.on_provider_change(broken)
    unsubscribe = manager.on_provider_change(lambda p: calls.append(p.name if p else None))

    await manager.set_active_provider("A")
    unsubscribe()
    await manager.set_active_provider("B")
    assert calls == ["A"]


@pytest.mark.asyncio
async def test_dispose_continues_after_a_provider_raises(manager, make_provider):
    providers = [
        make_provider("a"),
        make_provider("b", dispose_error=RuntimeError("stuck")),
        make_provider("c"),
    ]
    for p in providers:
        manager.register_provider(p)
    await manager.set_active_provider("a")

    await manager.dispose()

    assert [p.dispose_calls for p in providers] == [1, 1, 1]
    assert manager.get_active_provider() is None


@pytest.mark.asyncio
async def test_reinitialize_active_rebuilds_session(ready_manager):
    provider = ready_manager.get_active_provider()
    old_session = ready_manager.active_session
    assert await ready_manager.reinitialize_active() is True
    assert ready_manager.get_active_provider() is provider
    assert ready_manager.active_session is not old_session
    assert provider.setup_calls == 2
    assert provider.live_sessions() == 1


@pytest.mark.asyncio
async def test_reinitialize_without_active_provider(manager):
    assert await manager.reinitialize_active() is False


@pytest.mark.asyncio
async def test_failed_reinitialize_clears_selection(ready_manager):
    provider = ready_manager.get_active_provider()
    provider.fail_init = True
    changes = []
    ready_manager.on_provider_change(changes.append)

    with pytest.raises(InitializationError):
        await ready_manager.reinitialize_active()

    assert ready_manager.get_active_provider() is None
    assert ready_manager.active_session is None
    assert changes == [None]
    assert provider.live_sessions() == 0


@pytest.mark.asyncio
async def test_switch_passes_requested_model_to_initialize(ready_manager):
    provider = ready_manager.get_active_provider()
    await ready_manager.set_active_provider("alpha", SessionConfig(model_id="bigger"))

    assert provider.setup_calls == 2
    assert provider.setup_configs[-1].model_id == "bigger"
    assert ready_manager.active_session.config.model_id == "bigger"

    # Same model again: session replaced, backend left alone.
    await ready_manager.set_active_provider("alpha", SessionConfig(model_id="bigger"))
    assert provider.setup_calls == 2
    assert provider.live_sessions() == 1


@pytest.mark.asyncio
async def test_failed_model_reload_clears_selection(ready_manager):
    provider = ready_manager.get_active_provider()
    provider.fail_init = True
    with pytest.raises(InitializationError):
        await ready_manager.set_active_provider("alpha", SessionConfig(model_id="bigger"))
    assert ready_manager.get_active_provider() is None


@pytest.mark.asyncio
async def test_reconfigure_active_provider(ready_manager):
    provider = ready_manager.get_active_provider()
    old_session = ready_manager.active_session

    async def reject(p):
        raise ValueError("bad setting")

    with pytest.raises(ValueError):
        await ready_manager.reconfigure_provider("alpha", reject)
    assert ready_manager.active_session is old_session

    async def reset(p):
        await p.dispose()

    await ready_manager.reconfigure_provider("alpha", reset)
    assert ready_manager.get_active_provider() is provider
    assert ready_manager.active_session is not old_session
    assert provider.live_sessions() == 1

    async def break_backend(p):
        await p.dispose()
        p.fail_init = True

    with pytest.raises(InitializationError):
        await ready_manager.reconfigure_provider("alpha", break_backend)
    assert ready_manager.get_active_provider() is None

    with pytest.raises(ProviderNotFoundError):
        await ready_manager.reconfigure_provider("ghost", reset)


@pytest.mark.asyncio
async def test_reconfigure_inactive_provider_leaves_selection(ready_manager, make_provider):
    beta = make_provider("beta")
    ready_manager.register_provider(beta)
    session = ready_manager.active_session

    async def reset(p):
        await p.dispose()

    await ready_manager.reconfigure_provider("beta", reset)
    assert ready_manager.active_session is session
    assert beta.dispose_calls == 1
    assert beta.setup_calls == 0


def test_from_settings_registers_enabled_providers(settings):
    manager = ProviderManager.from_settings(settings)
    assert [p.name for p in manager.providers] == ["native", "local-gpu", "remote-api"]
    assert isinstance(manager.get_provider("native"), NativeProvider)
    assert isinstance(manager.get_provider("local-gpu"), LocalGPUProvider)
    assert isinstance(manager.get_provider("remote-api"), RemoteAPIProvider)
    assert manager.allow_remote_auto_select is False

    trimmed = Settings(providers={"native": {"enabled": False}})
    assert "native" not in [p.name for p in ProviderManager.from_settings(trimmed).providers]
