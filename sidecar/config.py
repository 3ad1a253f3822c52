from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"
PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Profile registry
    PROFILES_FILE: str | None = None

    # Session tokens
    SESSION_SIGNING_SECRET: str | None = None
    SESSION_TTL_SECONDS: int = 28800  # 8 hours
    AUTH_MODE: str = "session"  # "session" or "service"

    # Host routing
    STRICT_HOST_ROUTING: bool = False
    TRUST_FORWARDED_HOST: bool = False
    TRUSTED_PROXIES: str = ""  # comma separated IPs / CIDRs

    # Durable state (token cache, sessions, dedup entries)
    DATA_DIR: str | None = None
    STORE_BACKEND: str = "file"  # "file" or "redis"
    REDIS_URL: str | None = None

    ENCRYPTION_KEY: str | None = None

    # Upstream HTTP
    UPSTREAM_CONNECT_TIMEOUT: float = 5.0
    UPSTREAM_TIMEOUT: float = 15.0

    # =================================================================
    # RUNTIME LIMITS
    # =================================================================
    MAX_REQUEST_BYTES: int = 10 * 1024 * 1024
    MAX_ATTACHMENT_BYTES: int | None = None

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def data_dir(self) -> Path:
        if self.DATA_DIR:
            return Path(self.DATA_DIR)
        return PROJECT_ROOT / "var"

    def token_cache_dir(self) -> Path:
        return self.data_dir() / "token-cache"

    def session_dir(self) -> Path:
        return self.data_dir() / "sessions"

    def dedup_dir(self) -> Path:
        return self.data_dir() / "email-action-log"

    def profiles_path(self) -> Path:
        """Profile registry file, defaulting to config/profiles.json at the project root."""
        if self.PROFILES_FILE:
            return Path(self.PROFILES_FILE)
        return PROJECT_ROOT / "config" / "profiles.json"

    def trusted_proxy_entries(self) -> list[str]:
        return [item.strip() for item in self.TRUSTED_PROXIES.split(",") if item.strip()]

    def uses_service_identity(self) -> bool:
        return self.AUTH_MODE.strip().lower() == "service"


settings = Settings()
