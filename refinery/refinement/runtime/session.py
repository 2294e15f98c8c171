"""
Refinement session orchestrator.

Drives one request through the Analyst -> Critic -> Refiner protocol:

    IDLE -> DRAFTING -> AWAITING_USER -> CRITIQUING -> REFINING -> AWAITING_USER
         -> APPROVED | CANCELLED

One model call is outstanding at a time. Every call is raced against a fixed
timeout; failures publish an ``error`` event, roll the phase back to where the
public operation started and re-raise. Parse problems never raise.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from typing import Any

from ...config import RefinementConfig
from ..context.builder import ContextRelevanceBuilder, SmartContext
from ..core import (
    InvalidStateTransition,
    MissingArtifactError,
    MissingDraftError,
    ModelInvocationError,
    ModelTimeoutError,
    Phase,
    check_transition,
)
from ..prompts import (
    ARTIFACT_SECTIONS,
    ASK_QUESTIONS_TOOL,
    analyst_compact_prompt,
    analyst_followup_prompt,
    analyst_initial_prompt,
    chunk_prompt,
    critic_prompt,
    persona_prompt,
    refiner_prompt,
)
from ..types import (
    Artifact,
    ClarifyingQuestion,
    ConversationTurn,
    CritiqueIssue,
    CritiqueResult,
    Persona,
    SessionState,
    UserClarification,
)
from . import events
from .budget import TokenBudgetManager, TruncationResult, estimate_tokens, token_aware_skeleton
from .compression import ClarificationCompressor, CritiqueCompressor
from .events import EventCallback, SessionEventChannel
from .llm import ModelChannel, ModelReply
from .parsing import looks_like_draft, parse_artifact, parse_critique, parse_questions

logger = logging.getLogger(__name__)

FORCED_REFINE_MESSAGE = "Maximum clarification iterations reached. Proceeding with available information."
ISSUE_CATEGORIES = {
    "security": "technical",
    "performance": "technical",
    "architecture": "technical",
    "contradiction": "constraint",
}
SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}
DRAFT_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
HEADING_RE = re.compile(r"^\s*##\s+")


class RefinementSession:
    """Owns one SessionState and the only code paths that mutate it."""

    def __init__(
        self,
        session_id: str,
        task_id: str,
        original_request: str,
        channel: ModelChannel,
        *,
        config: RefinementConfig | None = None,
        budget: TokenBudgetManager | None = None,
        context_builder: ContextRelevanceBuilder | None = None,
        event_callback: EventCallback | None = None,
    ):
        self.state = SessionState(
            session_id=session_id,
            task_id=task_id,
            original_request=original_request,
        )
        self.channel = channel
        self.config = config or RefinementConfig()
        self.budget = budget or TokenBudgetManager.for_model(getattr(channel, "model_id", None))
        self.context_builder = context_builder
        self.events = SessionEventChannel(session_id, callback=event_callback)
        self.context = ""
        self.smart_context: SmartContext | None = None
        self.last_draft_truncation: TruncationResult | None = None
        self.pending_questions: list[ClarifyingQuestion] = []
        self.clarification_compressor = ClarificationCompressor(
            max_verbatim=self.config.verbatim_clarifications,
            keep_recent=self.config.keep_recent_turns,
        )
        self.critique_compressor = CritiqueCompressor()
        self._lock = asyncio.Lock()

    # -- read-only views --------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def current_draft(self) -> str | None:
        return self.state.current_draft

    @property
    def final_artifact(self) -> Artifact | None:
        return self.state.final_artifact

    @property
    def turns(self) -> list[ConversationTurn]:
        return list(self.state.turns)

    # -- bookkeeping ------------------------------------------------------

    async def _transition(self, target: Phase) -> None:
        current = self.state.phase
        check_transition(current, target)
        self.state.phase = target
        self.state.updated_at = time.time()
        logger.info("Session %s: %s -> %s", self.session_id, current.value, target.value)
        await self.events.emit(events.STATE_CHANGE, {"from": current.value, "to": target.value})

    async def _rollback(self, phase: Phase) -> None:
        # Recovery path; restores the entry phase without walking the graph.
        if self.state.phase is phase:
            return
        current = self.state.phase
        self.state.phase = phase
        self.state.updated_at = time.time()
        logger.info("Session %s: rolled back %s -> %s", self.session_id, current.value, phase.value)
        await self.events.emit(events.STATE_CHANGE, {"from": current.value, "to": phase.value})

    def _add_turn(self, role: str, content: str, metadata: dict[str, Any] | None = None) -> ConversationTurn:
        turn = ConversationTurn(role=role, content=content, metadata=metadata or {})
        self.state.turns.append(turn)
        self.state.updated_at = time.time()
        return turn

    async def _progress(self, message: str) -> None:
        await self.events.emit(events.PROGRESS, message)

    async def _call_model(
        self,
        persona: Persona,
        prompt: str,
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelReply:
        system_prompt = persona_prompt(persona)
        self.budget.set_system_prompt_tokens(estimate_tokens(system_prompt))
        timeout = self.config.call_timeout_seconds
        started = time.perf_counter()

        task = asyncio.ensure_future(self.channel.invoke(prompt, system_prompt=system_prompt, tools=tools))
        try:
            done, _pending = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        elapsed = time.perf_counter() - started

        if not done:
            # The losing call is dropped; consume its eventual outcome.
            task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)
            error = ModelTimeoutError(persona, elapsed, timeout)
            logger.warning("Session %s: %s", self.session_id, error)
            await self.events.emit(events.ERROR, str(error))
            raise error

        try:
            reply = task.result()
        except ModelInvocationError as exc:
            await self.events.emit(events.ERROR, f"{persona} call failed after {elapsed:.1f}s: {exc}")
            raise
        except Exception as exc:  # noqa: BLE001
            await self.events.emit(events.ERROR, f"{persona} call failed after {elapsed:.1f}s: {exc}")
            raise ModelInvocationError(f"{persona} call failed: {exc}") from exc

        logger.debug("Session %s: %s replied in %.1fs", self.session_id, persona, elapsed)
        await self._account(persona, prompt, reply)
        return reply

    async def _account(self, persona: Persona, prompt: str, reply: ModelReply) -> None:
        usage = reply.usage
        if usage is not None and usage.completion_tokens:
            # Provider counts include the system prompt, which the budget tracks separately.
            prompt_tokens = max(0, usage.prompt_tokens - self.budget.system_prompt_tokens) or estimate_tokens(prompt)
            self.budget.record_usage(persona, prompt_tokens, usage.completion_tokens, usage.cost_usd)
        else:
            self.budget.record_usage(persona, estimate_tokens(prompt), estimate_tokens(reply.text))
        info = self.budget.budget_info()

        if info.utilization_percent > self.config.summarize_utilization_percent:
            if await self._compact_history(info.utilization_percent):
                info = self.budget.budget_info()

        message = f"Tokens: {info.used_tokens:,}/{info.max_tokens:,} ({info.utilization_percent}%)"
        if usage is not None:
            message += f", cost {usage.display}"
        await self._progress(message)

    async def _compact_history(self, utilization_percent: int) -> bool:
        summarized = self.budget.summarize_conversation(
            self.state.turns,
            keep_recent_turns=self.config.keep_recent_turns,
        )
        if len(summarized) >= len(self.state.turns):
            return False
        self.state.turns = summarized
        self.budget.reduce_conversation_tokens(sum(estimate_tokens(turn.content) for turn in summarized))
        logger.debug("Session %s: summarized conversation at %d%%", self.session_id, utilization_percent)
        await self._progress(f"Conversation summarized at {utilization_percent}% budget utilization.")
        return True

    async def _fit_draft(self, stage: Persona, draft: str, share: float = 1.0) -> TruncationResult:
        """Truncate ``draft`` to the stage allocation, compacting history first if it is too small."""
        draft_tokens = estimate_tokens(draft)
        allocation = math.floor(self.budget.available_tokens_for_stage(stage) * share)
        if allocation < draft_tokens:
            if await self._compact_history(self.budget.budget_info().utilization_percent):
                allocation = math.floor(self.budget.available_tokens_for_stage(stage) * share)
        # The draft keeps at least min_artifact_tokens however full the conversation is.
        return self.budget.truncate_context(draft, max(allocation, self.config.min_artifact_tokens))

    # -- analyst ----------------------------------------------------------

    async def _build_context(self, workspace_context: str) -> str:
        allocation = self.budget.available_tokens_for_stage("analyst")
        if self.context_builder is not None:
            smart = await self.context_builder.build_context(self.state.original_request, allocation)
            self.smart_context = smart
            await self._progress(
                f"Context: {smart.full_content_files} full files, {smart.skeleton_files} skeletons "
                f"(~{smart.estimated_tokens:,} tokens)"
            )
            return self.budget.truncate_context(smart.content, allocation).content
        keywords = self.budget.extract_keywords(self.state.original_request)
        return token_aware_skeleton(workspace_context, allocation, keywords)

    def _absorb_analyst_reply(self, reply: ModelReply) -> list[ClarifyingQuestion]:
        questions = parse_questions(reply.text, reply.structured_calls)
        content = reply.text
        if not content and questions:
            content = "\n".join(f"{index}. {item.question}" for index, item in enumerate(questions, start=1))
        metadata: dict[str, Any] = {"questions": questions} if questions else {}
        self._add_turn("analyst", content, metadata)
        if reply.text and looks_like_draft(reply.text):
            self.state.current_draft = reply.text
        self.pending_questions = questions
        return questions

    async def start(self, workspace_context: str = "") -> ConversationTurn:
        """Run the first Analyst turn. Always ends in AWAITING_USER."""
        async with self._lock:
            if self.state.phase is not Phase.IDLE:
                raise InvalidStateTransition(self.state.phase, Phase.DRAFTING)
            entry = self.state.phase
            await self._transition(Phase.DRAFTING)
            try:
                if not self.state.turns:
                    self._add_turn("user", self.state.original_request)
                self.context = await self._build_context(workspace_context)

                if estimate_tokens(self.context) > self.config.compact_context_threshold_tokens:
                    prompt = analyst_compact_prompt(self.state.original_request, self.context)
                else:
                    prompt = analyst_initial_prompt(self.state.original_request, self.context)

                reply = await self._call_model("analyst", prompt, tools=[ASK_QUESTIONS_TOOL])
            except ModelInvocationError:
                await self._rollback(entry)
                raise

            questions = self._absorb_analyst_reply(reply)
            await self._transition(Phase.AWAITING_USER)
            if self.state.current_draft:
                await self.events.emit(events.DRAFT_READY, self.state.current_draft)
            if questions:
                await self.events.emit(events.QUESTION, questions)
            elif not self.state.current_draft:
                await self.events.emit(events.DRAFT_READY, reply.text)
            return self.state.turns[-1]

    async def handle_user_response(self, text: str) -> None:
        async with self._lock:
            entry = self.state.phase
            if entry is not Phase.AWAITING_USER:
                raise InvalidStateTransition(entry, Phase.DRAFTING)

            question_id = ",".join(item.id for item in self.pending_questions)
            if not question_id:
                question_id = f"answer-{len(self.state.clarifications) + 1}"
            self.state.clarifications.append(UserClarification(question_id=question_id, response=text))
            self._add_turn("user", text)
            self.state.iteration_count += 1
            self.pending_questions = []

            try:
                if self.state.iteration_count >= self.config.max_iterations:
                    await self._force_refine()
                    return

                await self._transition(Phase.DRAFTING)
                reply = await self._call_model("analyst", self._followup_prompt(text))
                questions = self._absorb_analyst_reply(reply)

                if self.state.current_draft:
                    await self.events.emit(events.DRAFT_READY, self.state.current_draft)
                    await self._critique()
                    return

                await self._transition(Phase.AWAITING_USER)
                if questions:
                    await self.events.emit(events.QUESTION, questions)
            except ModelInvocationError:
                await self._rollback(entry)
                raise

    def _followup_prompt(self, response: str) -> str:
        allocation = self.budget.available_tokens_for_stage("analyst")
        history = "\n\n".join(f"[{turn.role.upper()}]: {turn.content}" for turn in self.state.turns[:-1])
        history = self.budget.truncate_context(history, allocation // 2).content if history else ""
        remaining = max(0, allocation - estimate_tokens(history))
        context = self.budget.truncate_context(self.context, remaining).content if self.context else ""
        return analyst_followup_prompt(history, context, response)

    async def _force_refine(self) -> None:
        logger.info("Session %s: iteration ceiling reached, forcing refinement", self.session_id)
        self._add_turn("system", FORCED_REFINE_MESSAGE)
        await self._progress(FORCED_REFINE_MESSAGE)
        if not self.state.current_draft:
            answers = "\n".join(f"- {item.response}" for item in self.state.clarifications)
            self.state.current_draft = (
                f"# Requirements Draft\n\n{self.state.original_request}\n\n## Clarifications\n{answers}\n"
            )
            await self.events.emit(events.DRAFT_READY, self.state.current_draft)
        await self._refine()

    # -- critic -----------------------------------------------------------

    async def trigger_critique(self) -> CritiqueResult:
        async with self._lock:
            entry = self.state.phase
            try:
                return await self._critique()
            except ModelInvocationError:
                await self._rollback(entry)
                raise

    async def _critique(self) -> CritiqueResult:
        draft = self.state.current_draft
        if not draft:
            raise MissingDraftError("Cannot critique without a draft")
        await self._transition(Phase.CRITIQUING)

        truncation = await self._fit_draft("critic", draft)
        self.last_draft_truncation = truncation
        if truncation.was_truncated:
            await self._progress(
                f"Draft truncated for critique ({truncation.original_tokens:,} -> "
                f"{truncation.truncated_tokens:,} tokens)."
            )

        reply = await self._call_model("critic", critic_prompt(truncation.content))
        critique = parse_critique(reply.text, self.config.confidence_threshold)
        self.state.latest_critique = critique
        self._add_turn("critic", reply.text, {"critique": critique})
        await self.events.emit(events.CRITIQUE_READY, critique)
        logger.info("Session %s: critique confidence %d", self.session_id, critique.confidence_score)

        if critique.confidence_score >= self.config.confidence_threshold:
            await self._refine()
            return critique

        questions = self._questions_from_issues(critique.issues)
        if not questions:
            logger.info("Session %s: low confidence without actionable issues, refining", self.session_id)
            await self._refine()
            return critique

        await self._transition(Phase.AWAITING_USER)
        self.pending_questions = questions
        await self.events.emit(events.QUESTION, questions)
        return critique

    def _questions_from_issues(self, issues: list[CritiqueIssue]) -> list[ClarifyingQuestion]:
        actionable = sorted(
            (issue for issue in issues if issue.severity != "low"),
            key=lambda issue: SEVERITY_ORDER.get(issue.severity, 1),
        )
        questions: list[ClarifyingQuestion] = []
        for index, issue in enumerate(actionable[: self.config.max_critique_questions], start=1):
            questions.append(
                ClarifyingQuestion(
                    id=f"crit-{index}",
                    question=f"The Critic found an issue: {issue.description}. "
                    f"{issue.suggestion or 'Please clarify.'}",
                    category=ISSUE_CATEGORIES.get(issue.type, "requirement"),
                )
            )
        return questions

    # -- refiner ----------------------------------------------------------

    async def trigger_refine(self) -> Artifact:
        async with self._lock:
            entry = self.state.phase
            try:
                return await self._refine()
            except ModelInvocationError:
                await self._rollback(entry)
                raise

    async def _refine(self) -> Artifact:
        draft = self.state.current_draft
        if not draft:
            raise MissingDraftError("Cannot refine without a draft")
        await self._transition(Phase.REFINING)

        clarifications = self.clarification_compressor.summarize(self.state.clarifications)
        critique_summary = self.critique_compressor.summarize(self.state.latest_critique)

        self.budget.set_system_prompt_tokens(estimate_tokens(persona_prompt("refiner")))
        draft_tokens = estimate_tokens(draft)
        critique_tokens = estimate_tokens(critique_summary)
        estimated_output = max(self.config.min_artifact_tokens, int(draft_tokens * 1.5))
        available = self.budget.budget_info().available_tokens
        chunked = (
            draft_tokens + critique_tokens + estimated_output > available * self.config.chunk_budget_ratio
            or self.budget.needs_chunked_generation(draft_tokens + critique_tokens, estimated_output)
        )

        if chunked:
            logger.info("Session %s: generating artifact in sections", self.session_id)
            document = await self._generate_chunked(draft, critique_summary, clarifications)
        else:
            reply = await self._call_model("refiner", refiner_prompt(draft, critique_summary, clarifications))
            document = reply.text

        artifact = parse_artifact(document)
        self.state.final_artifact = artifact
        self._add_turn("refiner", document, {"artifact": artifact, "chunked": chunked})
        await self._transition(Phase.AWAITING_USER)
        await self.events.emit(events.ARTIFACT_READY, artifact)
        return artifact

    async def _generate_chunked(self, draft: str, critique_summary: str, clarifications: str) -> str:
        trimmed = (await self._fit_draft("refiner", draft, share=0.5)).content
        base_prompt = refiner_prompt(trimmed, critique_summary, clarifications)

        sections: list[str] = []
        total = len(ARTIFACT_SECTIONS)
        for index, (key, heading, _instruction) in enumerate(ARTIFACT_SECTIONS, start=1):
            await self._progress(f"Generating section {index}/{total}: {heading}")
            reply = await self._call_model("refiner", chunk_prompt(key, base_prompt, "\n\n".join(sections)))
            sections.append(_ensure_heading(reply.text, heading))

        header = (
            f"# {self._draft_title()} - Product Requirement Document\n\n"
            "## Meta\n- **Version**: 1.0\n- **Status**: Ready for Implementation\n\n"
        )
        return header + "\n\n".join(sections)

    def _draft_title(self) -> str:
        for match in DRAFT_TITLE_RE.finditer(self.state.current_draft or ""):
            title = match.group(1).strip()
            if title and title.lower() != "requirements draft":
                return title
        return self.state.original_request.strip()[:60] or "Untitled"

    # -- terminal ---------------------------------------------------------

    async def approve(self) -> Artifact:
        async with self._lock:
            if self.state.final_artifact is None:
                raise MissingArtifactError("Cannot approve before an artifact exists")
            await self._transition(Phase.APPROVED)
            self.events.close()
            return self.state.final_artifact

    async def cancel(self) -> None:
        async with self._lock:
            await self._transition(Phase.CANCELLED)
            self.events.close()


def _ensure_heading(text: str, heading: str) -> str:
    body = text.strip()
    if HEADING_RE.match(body):
        return body
    return f"## {heading}\n\n{body}"
