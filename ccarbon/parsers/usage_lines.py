"""Decode single JSONL log lines into usage events.

Two streams are understood:

* the history stream (`history.jsonl`), one record per submitted prompt, and
* per-session transcripts (`projects/<project>/<session>.jsonl`), which mix
  many record types; only assistant messages carrying `message.usage` matter.

Every decoder is a pure function returning an event or `None`. Lines that are
not JSON objects, or that do not match a known shape, are discarded silently.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Literal, Optional

from pydantic import ValidationError

from ccarbon.date_utils import epoch_ms_to_datetime, parse_iso_timestamp, utc_now
from ccarbon.models import (
    AssistantUsageRecord,
    HistoryRecord,
    PromptEvent,
    TokenUsageEvent,
    UsageEvent,
)

logger = logging.getLogger("ccarbon.parsers")

StreamKind = Literal["history", "session"]
UNKNOWN_MODEL = "unknown"


def _load_object(line: str) -> Optional[dict[str, Any]]:
    token = (line or "").strip()
    if not token:
        return None
    try:
        payload = json.loads(token)
    except (json.JSONDecodeError, ValueError):
        logger.debug("Discarding non-JSON line: %.80s", token)
        return None
    return payload if isinstance(payload, dict) else None


def parse_history_line(line: str) -> Optional[PromptEvent]:
    payload = _load_object(line)
    if payload is None:
        return None
    try:
        record = HistoryRecord.model_validate(payload)
    except ValidationError:
        return None

    session_id = (record.sessionId or "").strip() or None
    if session_id is None and record.display is None:
        return None

    return PromptEvent(
        sessionId=session_id,
        display=record.display,
        timestamp=epoch_ms_to_datetime(record.timestamp) or utc_now(),
        projectPath=record.project or None,
    )


def parse_session_line(line: str) -> Optional[TokenUsageEvent]:
    payload = _load_object(line)
    if payload is None or payload.get("type") != "assistant":
        return None
    try:
        record = AssistantUsageRecord.model_validate(payload)
    except ValidationError:
        return None

    usage = record.message.usage
    return TokenUsageEvent(
        sessionId=record.sessionId,
        model=(record.message.model or "").strip() or UNKNOWN_MODEL,
        inputTokens=usage.input_tokens,
        outputTokens=usage.output_tokens,
        timestamp=parse_iso_timestamp(record.timestamp) or utc_now(),
        projectPath=record.cwd or None,
    )


def parse_line(line: str, stream: StreamKind = "session") -> Optional[UsageEvent]:
    """Dispatch a raw line to the decoder for its stream."""
    if stream == "history":
        return parse_history_line(line)
    return parse_session_line(line)
