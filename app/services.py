"""Construct the supervisor's services and wire them together."""

from dataclasses import dataclass
from typing import Optional

from app.config import Settings, settings as default_settings
from app.engines.base import RenderEngine
from app.engines.command_engine import CommandRenderEngine
from app.events.notifier import InProcessEventBus
from app.jobs.coordinator import RenderLoopCoordinator
from app.jobs.progress import ProgressTracker
from app.jobs.registry import WorkerRegistry
from app.jobs.termination import TerminationBus
from app.processes.patterns import build_patterns
from app.processes.process_table import ProcessTable
from app.processes.reaper import ProcessReaper
from app.storage.settings_files import SettingsLifecycleManager


@dataclass
class Services:
    """Everything the API routers need, built once per app."""
    events: InProcessEventBus
    registry: WorkerRegistry
    reaper: ProcessReaper
    bus: TerminationBus
    settings_store: SettingsLifecycleManager
    engine: RenderEngine
    coordinator: RenderLoopCoordinator
    progress: ProgressTracker


def build_services(
    config: Optional[Settings] = None,
    engine: Optional[RenderEngine] = None,
    process_table: Optional[ProcessTable] = None,
) -> Services:
    """Build one independent set of services. Nothing here is process-global."""
    config = config or default_settings

    events = InProcessEventBus(history_size=config.event_history_size)
    registry = WorkerRegistry(events)
    reaper = ProcessReaper(
        build_patterns(config.engine_module_name, config.reaper_extra_patterns),
        table=process_table,
        grace_s=config.reaper_grace_s,
        verify_delay_s=config.reaper_verify_delay_s,
    )
    bus = TerminationBus(
        registry,
        reaper,
        events,
        graceful_poll_interval_s=config.graceful_poll_interval_s,
        sweep_passes=config.reaper_passes,
        sweep_settle_s=config.reap_settle_delay_s,
    )
    settings_store = SettingsLifecycleManager(base_dir=config.settings_temp_dir or None)
    if engine is None:
        engine = CommandRenderEngine(
            config.engine_command,
            notifier=events,
            on_spawn=reaper.track,
            on_exit=reaper.untrack,
            default_total_frames=config.default_total_frames,
        )
    coordinator = RenderLoopCoordinator(
        engine,
        registry,
        bus,
        reaper,
        settings_store,
        notifier=events,
        poll_interval_s=config.cancellation_poll_interval_s,
        settle_delay_s=config.reap_settle_delay_s,
        reaper_passes=config.reaper_passes,
        stop_timeout_s=config.stop_timeout_s,
        default_total_frames=config.default_total_frames,
    )
    progress = ProgressTracker(default_total_frames=config.default_total_frames)
    progress.attach(events)

    return Services(
        events=events,
        registry=registry,
        reaper=reaper,
        bus=bus,
        settings_store=settings_store,
        engine=engine,
        coordinator=coordinator,
        progress=progress,
    )
