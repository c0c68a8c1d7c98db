from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Literal, Optional


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    # Routes
    gate_target_url: str = Field(default="", env="GATE_TARGET_URL")
    gate_challenge_url: str = Field(default="", env="GATE_CHALLENGE_URL")
    gate_block_url: str = Field(default="", env="GATE_BLOCK_URL")
    gate_fallback_url: str = Field(default="/", env="GATE_FALLBACK_URL")

    # Signal weights (re-normalized over the signals present)
    gate_weight_user_agent: float = Field(default=0.20, env="GATE_WEIGHT_USER_AGENT")
    gate_weight_headers: float = Field(default=0.15, env="GATE_WEIGHT_HEADERS")
    gate_weight_behavior: float = Field(default=0.30, env="GATE_WEIGHT_BEHAVIOR")
    gate_weight_fingerprint: float = Field(default=0.25, env="GATE_WEIGHT_FINGERPRINT")
    gate_weight_network: float = Field(default=0.10, env="GATE_WEIGHT_NETWORK")

    # Decision thresholds
    gate_block_threshold: int = Field(default=30, env="GATE_BLOCK_THRESHOLD")
    gate_challenge_threshold: int = Field(default=60, env="GATE_CHALLENGE_THRESHOLD")
    gate_quick_allow_threshold: int = Field(default=90, env="GATE_QUICK_ALLOW_THRESHOLD")
    gate_block_on_critical: bool = Field(default=True, env="GATE_BLOCK_ON_CRITICAL")

    # Telemetry
    gate_capture_window_ms: int = Field(default=5000, env="GATE_CAPTURE_WINDOW_MS")
    gate_challenge_ttl_seconds: int = Field(default=300, env="GATE_CHALLENGE_TTL_SECONDS")
    gate_replay_limit: int = Field(default=8, env="GATE_REPLAY_LIMIT")
    gate_replay_window_seconds: int = Field(default=3600, env="GATE_REPLAY_WINDOW_SECONDS")

    # Comma-separated lists; an empty allowlist admits everyone
    gate_blocked_countries: str = Field(default="", env="GATE_BLOCKED_COUNTRIES")
    gate_referer_denylist: str = Field(default="", env="GATE_REFERER_DENYLIST")
    gate_allowed_countries: str = Field(default="", env="GATE_ALLOWED_COUNTRIES")
    gate_allowed_devices: str = Field(default="", env="GATE_ALLOWED_DEVICES")

    # Visitor filters
    gate_require_fingerprint: bool = Field(default=False, env="GATE_REQUIRE_FINGERPRINT")
    gate_min_score: int = Field(default=0, env="GATE_MIN_SCORE")

    # Server
    gate_host: str = Field(default="0.0.0.0", env="GATE_HOST")
    gate_port: int = Field(default=8000, env="GATE_PORT")

    # Redis (replay store); in-memory when empty
    redis_url: str = Field(default="", env="REDIS_URL")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["text", "json"] = Field(default="text", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def blocked_countries(self) -> list[str]:
        return [c.upper() for c in _split_csv(self.gate_blocked_countries)]

    @property
    def referer_denylist(self) -> list[str]:
        return _split_csv(self.gate_referer_denylist)

    @property
    def allowed_countries(self) -> list[str]:
        return [c.upper() for c in _split_csv(self.gate_allowed_countries)]

    @property
    def allowed_devices(self) -> list[str]:
        return [d.lower() for d in _split_csv(self.gate_allowed_devices)]


def load_settings(env_file: Optional[str] = ".env") -> Settings:
    """Fresh settings instance, re-reading the env file"""
    return Settings(_env_file=env_file)


settings = Settings()
