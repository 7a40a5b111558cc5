"""Merge parsed usage events into persisted session aggregates.

Accumulation is purely additive over deltas: applying the same event twice
counts it twice. Exactly-once relies on the tail readers reading each byte
at most once; nothing here deduplicates.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Optional

from ccarbon import config
from ccarbon.db.repositories.sessions import SqliteSessionRepository
from ccarbon.events import EventBus, Subscription
from ccarbon.models import PromptEvent, TokenUsageEvent, UsageEvent
from ccarbon.observability import record_tokens

logger = logging.getLogger("ccarbon.reconciler")


class SessionReconciler:
    """Single consumer applying bus events to the session store."""

    def __init__(self, sessions: SqliteSessionRepository, default_model: Optional[str] = None):
        self.sessions = sessions
        self.default_model = default_model or config.DEFAULT_MODEL
        self.subscription: Optional[Subscription] = None
        self.applied_count = 0
        self.failed_count = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_attached(self) -> bool:
        return self.subscription is not None and not self.subscription.closed

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def attach(self, bus: EventBus) -> Subscription:
        """Subscribe to the bus. Must happen before any reader starts."""
        if self.subscription is None or self.subscription.closed:
            self.subscription = bus.subscribe("session-reconciler")
        return self.subscription

    def start(self) -> None:
        if self.subscription is None:
            raise RuntimeError("SessionReconciler.start() called before attach()")
        if self.is_running:
            return
        self._task = asyncio.create_task(self._consume(), name="session-reconciler")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.subscription is not None:
            self.subscription.close()

    async def drain(self) -> None:
        """Wait until every event delivered so far has been applied."""
        if self.subscription is not None:
            await self.subscription.join()

    async def _consume(self) -> None:
        assert self.subscription is not None
        subscription = self.subscription
        try:
            while True:
                event = await subscription.get()
                try:
                    await self.apply(event)
                except Exception:
                    self.failed_count += 1
                    logger.exception(f"Unexpected error applying {event.kind} event")
                finally:
                    subscription.task_done()
        except asyncio.CancelledError:
            logger.debug("Reconciler consumer cancelled")
            raise

    async def apply(self, event: UsageEvent) -> bool:
        """Apply one event; returns False when it was skipped or failed to persist."""
        try:
            if isinstance(event, TokenUsageEvent):
                await self._apply_usage(event)
            elif isinstance(event, PromptEvent):
                if not event.sessionId:
                    return False
                await self._apply_prompt(event)
            else:
                logger.debug(f"Ignoring unknown event type {type(event).__name__}")
                return False
        except (sqlite3.Error, ValueError) as e:
            # Degraded mode: the update is lost, processing continues.
            self.failed_count += 1
            logger.error(f"Failed to persist {event.kind} event for session {getattr(event, 'sessionId', None)}: {e}")
            return False
        self.applied_count += 1
        return True

    async def _apply_prompt(self, event: PromptEvent) -> None:
        await self.sessions.ensure_session(
            event.sessionId,
            started_at=event.timestamp,
            project_path=event.projectPath,
            model_name=self.default_model,
        )
        logger.debug(f"Ensured session {event.sessionId}")

    async def _apply_usage(self, event: TokenUsageEvent) -> None:
        await self.sessions.add_usage(
            event.sessionId,
            input_tokens=event.inputTokens,
            output_tokens=event.outputTokens,
            model=event.model,
            timestamp=event.timestamp,
            project_path=event.projectPath,
            model_name=self.default_model,
        )
        record_tokens(model=event.model, token_input=event.inputTokens, token_output=event.outputTokens)
        logger.debug(
            f"Recorded tokens for session {event.sessionId} - "
            f"Input: {event.inputTokens}, Output: {event.outputTokens}, Model: {event.model}"
        )
