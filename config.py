from typing import List, Optional

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    # =========================
    # Environment
    # =========================
    ENV: str = Field(default="dev")
    LOG_LEVEL: str = Field(default="INFO")

    # =========================
    # Admission (origin allow-list, humanity check)
    # =========================
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000")

    RECAPTCHA_SECRET_KEY: Optional[str] = None
    RECAPTCHA_VERIFY_URL: str = "https://www.google.com/recaptcha/api/siteverify"
    RECAPTCHA_TIMEOUT_SECONDS: float = 5.0

    # =========================
    # Redis (rate limits)
    # =========================
    REDIS_URL: Optional[str] = None
    REDIS_TIMEOUT_SECONDS: float = 5.0

    RATE_LIMIT_REQUESTS: int = 10
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # =========================
    # Providers
    # =========================
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_API_URL: str = "https://api.openai.com/v1/chat/completions"
    OPENAI_MODEL: str = "gpt-4o"

    DEEPSEEK_API_KEY: Optional[str] = None
    DEEPSEEK_API_URL: str = "https://api.deepseek.com/chat/completions"
    DEEPSEEK_MODEL: str = "deepseek-chat"

    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.0-flash"

    LOCAL_MODEL_URL: Optional[str] = "http://localhost:11434"
    LOCAL_MODEL_NAME: str = "ilsp/meltemi-instruct"
    LOCAL_MODEL_BACKEND: str = "ollama"  # ollama | tgi
    LOCAL_MODEL_MAX_NEW_TOKENS: int = 512

    UPSTREAM_TIMEOUT_SECONDS: float = 20.0

    # =========================
    # Out-of-band traffic events
    # =========================
    EVENT_SINK_URL: Optional[str] = None
    EVENT_SINK_SECRET: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.ENV.strip().lower() in {"prod", "production"}

    @property
    def allowed_origins(self) -> List[str]:
        return [
            origin.strip().rstrip("/")
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]


# Singleton
settings = Settings()
