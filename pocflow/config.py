"""Application Configuration — environment-driven settings via pydantic-settings.

Invariants:
    - Every tunable timing of the reconciliation engine and adapters comes from here
    - get_settings() is cached (lru_cache): single instance per process
    - Timings are stored in milliseconds; *_seconds properties convert for asyncio

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support (ADR: developer UX)
    - Defaults mirror the original web client (500 ms reload debounce, 5 s poll,
      5 min poll cap) so the orchestrator works out-of-the-box against a local backend
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Analysis backend
    backend_base_url: str = "http://localhost:3001"

    @field_validator("backend_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Endpoint paths start with '/', so the base never ends with one."""
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    backend_timeout_seconds: float = 30.0
    backend_connect_timeout_seconds: float = 10.0
    # analyze / generate-poc run LLM work inside the request (minutes, not seconds)
    backend_agent_timeout_seconds: float = 600.0

    # Reconciliation engine
    reload_debounce_ms: int = 500
    stale_failure_threshold: int = 3

    # Poller
    poll_interval_ms: int = 5_000
    poll_max_duration_ms: int = 300_000

    # Push listener
    sse_reconnect_delay_ms: int = 3_000

    # Workflow
    followup_trigger_answers: int = 7
    toast_duration_ms: int = 3_000

    # API
    cors_origins: list[str] = ["http://localhost:5173"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def reload_debounce_seconds(self) -> float:
        return self.reload_debounce_ms / 1000

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def poll_max_duration_seconds(self) -> float:
        return self.poll_max_duration_ms / 1000

    @property
    def sse_reconnect_delay_seconds(self) -> float:
        return self.sse_reconnect_delay_ms / 1000


@lru_cache
def get_settings() -> Settings:
    return Settings()
