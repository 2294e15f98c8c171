"""
Registry of concurrent refinement sessions.

Each session owns its state; the manager only routes messages, recognises
approve/cancel commands and fires the completion callback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Awaitable, Callable

from ..config import RefineryConfig
from .context.builder import ContextRelevanceBuilder
from .core import TERMINAL_PHASES, ModelInvocationError
from .runtime import events
from .runtime.budget import TokenBudgetManager
from .runtime.events import EventCallback
from .runtime.llm import LiteLLMChannel, ModelChannel
from .runtime.session import RefinementSession
from .types import Artifact, ConversationTurn, SessionState

logger = logging.getLogger(__name__)

APPROVE_COMMANDS = {"approve", "approved", "lgtm", "yes", "approve the plan"}
CANCEL_COMMANDS = {"cancel", "abort", "stop refinement", "exit"}

ChannelFactory = Callable[[str | None], ModelChannel]
CompletionCallback = Callable[[str, Artifact], "Awaitable[None] | None"]


def _normalize_command(message: str) -> str:
    return message.strip().lower().rstrip(".!")


def is_approval(message: str) -> bool:
    return _normalize_command(message) in APPROVE_COMMANDS


def is_cancel(message: str) -> bool:
    return _normalize_command(message) in CANCEL_COMMANDS


class RefinementManager:
    def __init__(
        self,
        config: RefineryConfig | None = None,
        channel_factory: ChannelFactory | None = None,
        on_complete: CompletionCallback | None = None,
        event_callback: EventCallback | None = None,
    ):
        self.config = config or RefineryConfig()
        self.channel_factory = channel_factory
        self.on_complete = on_complete
        self.event_callback = event_callback
        self.sessions: dict[str, RefinementSession] = {}

    def _channel(self, channel: ModelChannel | None, model_id: str | None) -> ModelChannel:
        if channel is not None:
            return channel
        if self.channel_factory is not None:
            return self.channel_factory(model_id)
        model_config = replace(self.config.model, name=model_id) if model_id else self.config.model
        return LiteLLMChannel(model_config)

    def _new_session_id(self, task_id: str) -> str:
        stamp = int(time.time() * 1000)
        session_id = f"refine-{task_id}-{stamp}"
        while session_id in self.sessions:
            stamp += 1
            session_id = f"refine-{task_id}-{stamp}"
        return session_id

    def _create_session(
        self,
        task_id: str,
        request: str,
        channel: ModelChannel | None,
        model_id: str | None,
        context_builder: ContextRelevanceBuilder | None = None,
    ) -> RefinementSession:
        resolved = self._channel(channel, model_id)
        session = RefinementSession(
            self._new_session_id(task_id),
            task_id,
            request,
            resolved,
            config=self.config.refinement,
            budget=TokenBudgetManager.for_model(model_id or getattr(resolved, "model_id", None)),
            context_builder=context_builder,
            event_callback=self.event_callback,
        )
        self.sessions[session.session_id] = session
        logger.info("Started refinement session %s for task %s", session.session_id, task_id)
        return session

    async def start_session(
        self,
        task_id: str,
        request: str,
        channel: ModelChannel | None = None,
        workspace_context: str = "",
        model_id: str | None = None,
    ) -> RefinementSession:
        session = self._create_session(task_id, request, channel, model_id)
        await self._start(session, workspace_context)
        return session

    async def start_session_with_smart_context(
        self,
        task_id: str,
        request: str,
        workspace_root: Path | str | None,
        channel: ModelChannel | None = None,
        model_id: str | None = None,
    ) -> RefinementSession:
        if not workspace_root:
            raise ValueError("A workspace root is required to build smart context")
        builder = ContextRelevanceBuilder(Path(workspace_root), config=self.config.context)
        session = self._create_session(task_id, request, channel, model_id, context_builder=builder)
        await session.events.emit(events.PROGRESS, f"Analyzing codebase in {builder.workspace_root}...")
        await self._start(session)
        return session

    async def _start(self, session: RefinementSession, workspace_context: str = "") -> None:
        try:
            await session.start(workspace_context)
        except ModelInvocationError:
            logger.warning("Discarding session %s after its first model call failed", session.session_id)
            session.events.close()
            self._cleanup(session.session_id)
            raise

    def _require(self, session_id: str) -> RefinementSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown refinement session: {session_id}")
        return session

    async def handle_user_message(self, session_id: str, message: str) -> str:
        """Route a chat message; returns "approved", "cancelled" or "answered"."""
        session = self._require(session_id)
        if is_approval(message) and session.final_artifact is not None:
            await self.approve_session(session_id)
            return "approved"
        if is_cancel(message):
            await self.cancel_session(session_id)
            return "cancelled"
        await session.handle_user_response(message)
        return "answered"

    async def approve_session(self, session_id: str) -> Artifact:
        session = self._require(session_id)
        artifact = await session.approve()
        if self.on_complete is not None:
            maybe = self.on_complete(session.state.task_id, artifact)
            if asyncio.iscoroutine(maybe):
                await maybe
        self._cleanup(session_id)
        return artifact

    async def cancel_session(self, session_id: str) -> None:
        session = self._require(session_id)
        await session.cancel()
        self._cleanup(session_id)

    def _cleanup(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
        logger.debug("Released refinement session %s", session_id)

    def session_state(self, session_id: str) -> SessionState | None:
        session = self.sessions.get(session_id)
        return session.state if session else None

    def session_draft(self, session_id: str) -> str | None:
        session = self.sessions.get(session_id)
        return session.current_draft if session else None

    def artifact(self, session_id: str) -> Artifact | None:
        session = self.sessions.get(session_id)
        return session.final_artifact if session else None

    def conversation_history(self, session_id: str) -> list[ConversationTurn]:
        session = self.sessions.get(session_id)
        return session.turns if session else []

    def session_for_task(self, task_id: str) -> RefinementSession | None:
        for session in self.sessions.values():
            if session.state.task_id == task_id and session.phase not in TERMINAL_PHASES:
                return session
        return None

    def has_active_session(self, task_id: str) -> bool:
        return self.session_for_task(task_id) is not None

    async def dispose(self) -> None:
        for session_id, session in list(self.sessions.items()):
            if session.phase not in TERMINAL_PHASES:
                await session.cancel()
            self._cleanup(session_id)

