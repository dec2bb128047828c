# services/settings.py
"""
Tunables for dev-server launch, health polling and recovery.

Every value can be overridden through the environment with the ``PREVIEW_``
prefix (e.g. ``PREVIEW_DEV_PORT=3000``) or a ``.env`` file.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PreviewSettings(BaseSettings):
    """Preview lifecycle configuration"""

    model_config = SettingsConfigDict(
        env_prefix="PREVIEW_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # SANDBOX
    template_id: Optional[str] = Field(default=None, validation_alias="E2B_TEMPLATE_ID")
    sandbox_ttl_ms: int = 3_600_000  # 1 hour
    app_dir: str = "/home/user/app"
    env_file_name: str = ".env.local"

    # DEV SERVER
    dev_port: int = 8081
    tunnel_domain_suffix: str = "ngrok.dev"
    ngrok_authtoken: Optional[str] = Field(
        default=None, validation_alias="NGROK_AUTHTOKEN"
    )
    start_command: str = (
        "cd {app_dir} && CI=false bun install && "
        "bun run start -- --ngrokurl {domain} --tunnel --web"
    )
    inotify_max_user_watches: int = 524288
    watch_app_dir: bool = True

    # LAUNCH POLLING
    launch_poll_interval: float = 3.0
    launch_max_wait: float = 60.0
    launch_consecutive_probes: int = 2
    port_release_wait: float = 2.0

    # TIMEOUTS (seconds)
    probe_timeout: float = 5.0
    command_timeout: float = 30.0
    server_check_timeout: float = 10.0

    # HEALTH POLLING: (ticks, interval) tiers, last interval applies after
    poll_tier_intervals: List[float] = [10.0, 30.0, 60.0]
    poll_tier_ticks: List[int] = [3, 3]
    monitor_initial_delay: float = 2.0

    # RECOVERY
    max_recreation_retries: int = 3
    recreation_lease_ttl: int = 120

    # HTTP BACKEND
    api_base_url: str = "http://localhost:8000"


@lru_cache()
def get_preview_settings() -> PreviewSettings:
    """
    Get cached preview settings singleton.

    Returns:
        PreviewSettings: Singleton instance of preview settings
    """
    return PreviewSettings()
