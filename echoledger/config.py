from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_env_file() -> str | None:
    cur = Path(__file__).resolve()
    for parent in [cur.parent, *cur.parents]:
        candidate = parent / ".env"
        if candidate.exists():
            return str(candidate)
    return None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=_find_env_file() or ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # remote backend
    API_BASE_URL: str = "http://localhost:5000/api/v1"
    SOCKET_URL: str = "http://localhost:5000"
    HTTP_TIMEOUT_SEC: float = 8.0
    SOCKET_CONNECT_TIMEOUT_SEC: float = 5.0
    SOCKET_RETRY_SEC: float = 30.0

    # storage
    STORAGE_BACKEND: str = "redis"  # "redis" | "memory"
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    DRAFT_TTL_SEC: int = 3600
    CHAT_IDLE_SEC: int = 1800

    # signup
    OTP_RESEND_COOLDOWN_SEC: int = 60

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


settings = Settings()
