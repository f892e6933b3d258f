from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =========================
# Enums
# =========================

class Direction(str, Enum):
    MODERN_TO_ANCIENT = "modern-to-ancient"
    ANCIENT_TO_MODERN = "ancient-to-modern"


class Style(str, Enum):
    STANDARD = "standard"
    FORMAL_REGISTER = "formal-register"


class ProviderId(str, Enum):
    LOCAL = "ollama"
    OPENAI = "openai"
    DEEPSEEK = "deepseek"
    GEMINI = "gemini"


class IncrementKind(str, Enum):
    CONTENT = "content"
    TERMINAL = "terminal"
    ERROR = "error"


class AdmissionReason(str, Enum):
    OK = "ok"
    ORIGIN_DENIED = "origin-denied"
    RATE_LIMITED = "rate-limited"
    HUMANITY_CHECK_FAILED = "humanity-check-failed"


# =========================
# Requests
# =========================

class TranslationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    text: str = Field(min_length=1)
    direction: Direction
    style: Style = Style.STANDARD
    provider: ProviderId

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text must not be blank")
        return value


# =========================
# Stream increments
# =========================

class StreamIncrement(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: IncrementKind
    payload: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def content(cls, text: str) -> "StreamIncrement":
        return cls(kind=IncrementKind.CONTENT, payload=text)

    @classmethod
    def terminal(cls) -> "StreamIncrement":
        return cls(kind=IncrementKind.TERMINAL)

    @classmethod
    def error(cls, message: str) -> "StreamIncrement":
        return cls(kind=IncrementKind.ERROR, message=message)

    def to_record(self) -> dict:
        """Outbound NDJSON record for this increment."""
        if self.kind == IncrementKind.CONTENT:
            return {"response": self.payload}
        if self.kind == IncrementKind.ERROR:
            return {"error": self.message}
        return {"done": True}


# =========================
# Admission
# =========================

class RateLimitResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    remaining: int
    limit: int
    reset_at: int  # unix millis


class AdmissionDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: AdmissionReason
    retry_after_seconds: Optional[int] = None
    rate_limit: Optional[RateLimitResult] = None


# =========================
# Responses
# =========================

class HealthResponse(BaseModel):
    status: str
    environment: str
    providers: dict


class ErrorResponse(BaseModel):
    error: str
