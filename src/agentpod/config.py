"""Configuration for the agentpod service."""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings, loaded from AGENTPOD_* environment variables."""

    # Service configuration
    service_name: str = "agentpod"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8080

    # Logging
    log_level: str = "INFO"
    log_format: str = Field(default="json", description="json or console")

    # Sandbox engine (Docker)
    docker_base_url: str | None = None  # None -> docker.from_env()
    agent_image: str = "agentpod-agent:latest"
    agent_network: str = "agentpod"
    agent_port: int = 18789
    agent_model: str = "anthropic/claude-sonnet-4-5-20250929"
    agent_cpus: float = 0.5
    agent_memory_mb: int = 512
    stop_timeout_seconds: int = 10

    # Health polling while provisioning
    health_poll_interval_seconds: float = 2.0
    health_poll_attempts: int = 30
    health_probe_timeout_seconds: float = 5.0

    # Binding registry shared with the gateway
    registry_path: str = "/var/lib/agentpod/gateway.json"
    workspaces_dir: str = "/var/lib/agentpod/workspaces"
    gateway_workspaces_dir: str = "/root/.gateway/workspaces"
    templates_dir: str | None = None
    binding_model: str = "openai-custom/gpt-5-nano"
    binding_channel: str = "webchat"

    # Debounced gateway reload
    reload_debounce_seconds: float = 5.0
    gateway_container: str = "agentpod-gateway"
    gateway_process_pattern: str = "node.*gateway"

    # Gateway client
    gateway_url: str = "http://127.0.0.1:18789"
    gateway_model: str = "agent"
    gateway_timeout_seconds: float = 120.0
    gateway_max_attempts: int = 3
    gateway_retry_step_seconds: float = 1.0

    # Speech synthesis
    tts_url: str = "https://tts.invalid/api"
    tts_api_key: str = ""
    tts_model: str = "eleven_multilingual_v2"
    tts_poll_interval_seconds: float = 1.0
    tts_poll_attempts: int = 120
    synthesis_batch_size: int = 3

    # Reaper
    reap_interval_seconds: int = 6 * 60 * 60
    free_inactive_days: int = 7
    paid_inactive_days: int = 30
    reaper_enabled: bool = False

    # Cron endpoint auth
    cron_secret: str = ""

    # Starting balance for the in-memory credit store
    default_credits: int = 1000

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of {valid_levels}")
        return v

    model_config = SettingsConfigDict(env_prefix="AGENTPOD_", env_file=".env")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
