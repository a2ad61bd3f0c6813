"""Shared fixtures: fast timings, fake process table, controllable engine."""

import pytest

from app.config import Settings
from app.events.notifier import InProcessEventBus
from app.jobs.coordinator import RenderLoopCoordinator
from app.jobs.registry import WorkerRegistry
from app.jobs.termination import TerminationBus
from app.processes.patterns import build_patterns
from app.storage.settings_files import SettingsLifecycleManager

from fakes import ControlledEngine, CountingReaper, FakeProcessTable


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fast_settings(tmp_path):
    return Settings(
        cancellation_poll_interval_s=0.01,
        stop_timeout_s=2.0,
        reaper_passes=2,
        reap_settle_delay_s=0.01,
        reaper_grace_s=0.01,
        reaper_verify_delay_s=0.01,
        graceful_poll_interval_s=0.02,
        graceful_shutdown_timeout_ms=500,
        settings_temp_dir=str(tmp_path / "settings-root"),
        engine_command="",
        engine_module_name="render-engine",
        reaper_extra_patterns=[],
        default_total_frames=10,
    )


@pytest.fixture
def events():
    return InProcessEventBus(history_size=500)


@pytest.fixture
def process_table():
    return FakeProcessTable()


@pytest.fixture
def reaper(process_table, fast_settings):
    return CountingReaper(
        build_patterns(fast_settings.engine_module_name),
        table=process_table,
        grace_s=fast_settings.reaper_grace_s,
        verify_delay_s=fast_settings.reaper_verify_delay_s,
    )


@pytest.fixture
def registry(events):
    return WorkerRegistry(events)


@pytest.fixture
def bus(registry, reaper, events, fast_settings):
    return TerminationBus(
        registry,
        reaper,
        events,
        graceful_poll_interval_s=fast_settings.graceful_poll_interval_s,
        sweep_passes=2,
        sweep_settle_s=fast_settings.reap_settle_delay_s,
    )


@pytest.fixture
def settings_store(fast_settings):
    return SettingsLifecycleManager(base_dir=fast_settings.settings_temp_dir)


@pytest.fixture
def engine():
    return ControlledEngine()


@pytest.fixture
def coordinator(engine, registry, bus, reaper, settings_store, events, fast_settings):
    return RenderLoopCoordinator(
        engine,
        registry,
        bus,
        reaper,
        settings_store,
        notifier=events,
        poll_interval_s=fast_settings.cancellation_poll_interval_s,
        settle_delay_s=fast_settings.reap_settle_delay_s,
        reaper_passes=fast_settings.reaper_passes,
        stop_timeout_s=fast_settings.stop_timeout_s,
        default_total_frames=fast_settings.default_total_frames,
    )
