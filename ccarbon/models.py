"""Pydantic models for log records, usage events and query results."""
from __future__ import annotations

from datetime import datetime
from typing import Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Wire records (one JSON object per log line) ─────────────────────

class HistoryRecord(BaseModel):
    """A prompt entry from the CLI's history stream."""

    model_config = ConfigDict(extra="ignore")

    display: Optional[str] = None
    timestamp: Optional[float] = None  # epoch milliseconds
    project: Optional[str] = None
    sessionId: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _lenient_timestamp(cls, value):
        # A bad timestamp falls back to "now"; it does not void the prompt.
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return value


class MessageUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)


class AssistantMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: Optional[str] = None
    usage: MessageUsage


class AssistantUsageRecord(BaseModel):
    """The only session-stream record shape that carries token usage."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["assistant"]
    sessionId: str = Field(min_length=1)
    timestamp: Optional[str] = None
    cwd: Optional[str] = None
    message: AssistantMessage


# ── Events ──────────────────────────────────────────────────────────

class PromptEvent(BaseModel):
    kind: Literal["prompt"] = "prompt"
    sessionId: Optional[str] = None
    display: Optional[str] = None
    timestamp: datetime
    projectPath: Optional[str] = None


class TokenUsageEvent(BaseModel):
    """An incremental usage delta, never a cumulative total."""

    kind: Literal["token_usage"] = "token_usage"
    sessionId: str
    model: str = "unknown"
    inputTokens: int = 0
    outputTokens: int = 0
    timestamp: datetime
    projectPath: Optional[str] = None


UsageEvent = Union[PromptEvent, TokenUsageEvent]


T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    offset: int
    limit: int


# ── Query results ───────────────────────────────────────────────────

class Session(BaseModel):
    sessionId: str
    projectPath: Optional[str] = None
    startTime: datetime
    lastActivityTime: datetime
    inputTokens: int = 0
    outputTokens: int = 0
    modelName: str = "sonnet"
    actualModel: Optional[str] = None
    modelFamily: str = "unknown"
    totalTokens: int = 0


class ModelUsage(BaseModel):
    model: str
    modelFamily: str = "unknown"
    inputTokens: int = 0
    outputTokens: int = 0
    totalTokens: int = 0
    sessionCount: int = 0


class UsageSummary(BaseModel):
    period: str
    since: Optional[datetime] = None
    inputTokens: int = 0
    outputTokens: int = 0
    totalTokens: int = 0
    sessionCount: int = 0
    byModel: list[ModelUsage] = Field(default_factory=list)


class DailyUsage(BaseModel):
    date: str
    inputTokens: int = 0
    outputTokens: int = 0
    totalTokens: int = 0
    sessionCount: int = 0


class HourlyUsage(BaseModel):
    hour: datetime
    inputTokens: int = 0
    outputTokens: int = 0
    totalTokens: int = 0


class BurnRatePoint(BaseModel):
    date: str
    totalTokens: int = 0
    activeSeconds: float = 0.0
    tokensPerSecond: float = 0.0


class MonitorStatus(BaseModel):
    running: bool = False
    projectsDir: str = ""
    projectsDirExists: bool = False
    historyPath: Optional[str] = None
    watchedDirectories: int = 0
    tailedFiles: int = 0
    droppedEvents: int = 0
