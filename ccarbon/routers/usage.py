"""Read-only query routers over the aggregated session store."""
from __future__ import annotations

from datetime import date as date_type, datetime, time
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from ccarbon.date_utils import from_epoch, period_start, utc_now
from ccarbon.db import connection
from ccarbon.db.factory import get_session_repository, get_usage_repository
from ccarbon.model_identity import model_family
from ccarbon.models import (
    BurnRatePoint,
    DailyUsage,
    HourlyUsage,
    ModelUsage,
    MonitorStatus,
    PaginatedResponse,
    Session,
    UsageSummary,
)

usage_router = APIRouter(prefix="/api/usage", tags=["usage"])
sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
monitor_router = APIRouter(prefix="/api/monitor", tags=["monitor"])


def _session_from_row(row: dict[str, Any]) -> Session:
    input_tokens = int(row.get("input_tokens") or 0)
    output_tokens = int(row.get("output_tokens") or 0)
    actual = row.get("actual_model")
    declared = row.get("model_name") or "sonnet"
    return Session(
        sessionId=row["session_id"],
        projectPath=row.get("project_path"),
        startTime=from_epoch(row["start_time"]),
        lastActivityTime=from_epoch(row["last_activity_time"]),
        inputTokens=input_tokens,
        outputTokens=output_tokens,
        modelName=declared,
        actualModel=actual,
        modelFamily=model_family(actual or declared),
        totalTokens=input_tokens + output_tokens,
    )


def _model_usage_from_row(row: dict[str, Any]) -> ModelUsage:
    model = row.get("model") or "unknown"
    return ModelUsage(
        model=model,
        modelFamily=model_family(model),
        inputTokens=row["input_tokens"],
        outputTokens=row["output_tokens"],
        totalTokens=row["total_tokens"],
        sessionCount=row["session_count"],
    )


def _parse_day(value: str | None) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        # Noon avoids DST edges when converting to the local calendar day.
        return datetime.combine(date_type.fromisoformat(raw), time(12)).astimezone()
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date: {value}")


# ── Usage rollups ───────────────────────────────────────────────────

@usage_router.get("/summary", response_model=UsageSummary)
async def get_usage_summary(
    period: str = Query("today", description="today, week, days or all"),
    days: int | None = Query(None, ge=0, description="Lookback for period=days"),
):
    """Token totals for a period, broken down by model."""
    token = (period or "").strip().lower()
    if token == "days" and days is None:
        raise HTTPException(status_code=400, detail="period=days requires the days parameter")
    try:
        since = period_start(token, utc_now(), days)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    db = await connection.get_connection()
    repo = get_usage_repository(db)
    totals = await repo.get_totals(since)
    by_model = await repo.get_model_totals(since)
    return UsageSummary(
        period=token,
        since=since,
        inputTokens=totals["input_tokens"],
        outputTokens=totals["output_tokens"],
        totalTokens=totals["total_tokens"],
        sessionCount=totals["session_count"],
        byModel=[_model_usage_from_row(row) for row in by_model],
    )


@usage_router.get("/daily", response_model=list[DailyUsage])
async def get_daily_usage(days: int | None = Query(30, ge=0, description="Lookback in days; omit for all-time")):
    db = await connection.get_connection()
    rows = await get_usage_repository(db).get_daily_usage(days)
    return [
        DailyUsage(
            date=row["date"],
            inputTokens=row["input_tokens"],
            outputTokens=row["output_tokens"],
            totalTokens=row["total_tokens"],
            sessionCount=row["session_count"],
        )
        for row in rows
    ]


@usage_router.get("/hourly", response_model=list[HourlyUsage])
async def get_hourly_usage(date: str | None = Query(None, description="Local day as YYYY-MM-DD; defaults to today")):
    day = _parse_day(date)
    db = await connection.get_connection()
    rows = await get_usage_repository(db).get_hourly_usage(day)
    return [
        HourlyUsage(
            hour=row["hour"],
            inputTokens=row["input_tokens"],
            outputTokens=row["output_tokens"],
            totalTokens=row["total_tokens"],
        )
        for row in rows
    ]


@usage_router.get("/burn-rate", response_model=list[BurnRatePoint])
async def get_burn_rate(days: int | None = Query(30, ge=0)):
    """Tokens per active second, per day with activity."""
    db = await connection.get_connection()
    rows = await get_usage_repository(db).get_burn_rate_by_day(days)
    return [
        BurnRatePoint(
            date=row["date"],
            totalTokens=row["total_tokens"],
            activeSeconds=row["active_seconds"],
            tokensPerSecond=row["tokens_per_second"],
        )
        for row in rows
    ]


# ── Sessions ────────────────────────────────────────────────────────

@sessions_router.get("", response_model=PaginatedResponse[Session])
async def list_sessions(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """Sessions ordered by most recent activity."""
    db = await connection.get_connection()
    repo = get_session_repository(db)
    rows = await repo.list_recent(limit=limit, offset=offset)
    total = await repo.count()
    return PaginatedResponse[Session](
        items=[_session_from_row(row) for row in rows],
        total=total,
        offset=offset,
        limit=limit,
    )


@sessions_router.get("/{session_id}", response_model=Session)
async def get_session(session_id: str):
    db = await connection.get_connection()
    row = await get_session_repository(db).get_by_id(session_id)
    if not row:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return _session_from_row(row)


# ── Monitor ─────────────────────────────────────────────────────────

@monitor_router.get("/status", response_model=MonitorStatus)
async def get_monitor_status(request: Request):
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        return MonitorStatus()
    return monitor.status()
