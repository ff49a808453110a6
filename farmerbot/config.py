"""Farmerbot configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Farmerbot settings loaded from environment variables."""

    # Identity
    network: str = "dev"  # dev | qa | test | main
    twin_id: int = 0
    key_type: str = "sr25519"  # sr25519 | ed25519

    # Ledger gateway
    ledger_url: str = "http://localhost:8080"
    ledger_token: str = ""
    ledger_timeout: float = 30.0

    # Relay used to reach nodes
    relay_url: str = "http://localhost:8081"
    relay_timeout: float = 10.0

    # Power management
    tick_interval: int = 300  # seconds between management ticks
    max_concurrent_commands: int = 4
    default_wake_up_threshold: int = 80  # percent
    default_cooldown: int = 1800  # seconds after a power change before the opposite change

    # Periodic wake-up of off nodes
    periodic_wake_up_enabled: bool = True
    periodic_wake_up_start: str = "00:00"  # HH:MM, UTC
    periodic_wake_up_limit: int = 1  # nodes woken per tick

    # Process
    snapshot_path: str = ""
    api_host: str = "0.0.0.0"
    api_port: int = 8003
    log_level: str = "INFO"
    log_format: str = "json"  # json | text
    testing: bool = False  # Disables the background monitor
    monitor_max_backoff: int = 3600  # seconds, cap on the wait after consecutive failed ticks

    class Config:
        env_prefix = "FARMERBOT_"


settings = Settings()
