"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Service
    service_name: str = "Render Loop Supervisor"
    service_port: int = 8001
    log_level: str = "INFO"

    # Cancellation race
    cancellation_poll_interval_s: float = 0.05
    stop_timeout_s: float = 10.0

    # Process reaping
    reaper_passes: int = 2
    reap_settle_delay_s: float = 0.5
    reaper_grace_s: float = 0.3
    reaper_verify_delay_s: float = 0.2
    reaper_extra_patterns: List[str] = []

    # Termination bus
    graceful_shutdown_timeout_ms: int = 10000
    graceful_poll_interval_s: float = 0.5

    # Settings files (empty = system temp dir)
    settings_temp_dir: str = ""

    # External render engine
    engine_command: str = ""
    engine_module_name: str = "render-engine"
    default_total_frames: int = 100

    # Observability
    event_history_size: int = 1000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
