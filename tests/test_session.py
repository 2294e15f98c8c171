from __future__ import annotations

import asyncio

import pytest

from refinery.config import RefinementConfig
from refinery.refinement.core import (
    InvalidStateTransition,
    MissingArtifactError,
    MissingDraftError,
    ModelInvocationError,
    ModelTimeoutError,
    Phase,
)
from refinery.refinement.runtime.budget import TokenBudgetManager
from refinery.refinement.runtime.llm import ModelReply, ModelUsage
from refinery.refinement.runtime.session import FORCED_REFINE_MESSAGE, RefinementSession
from refinery.refinement.types import ConversationTurn

DRAFT = """# CSV Export

## Problem Statement
Users cannot export reports.

## Functional Requirements
- Export the current report as CSV
"""

ARTIFACT = """# CSV Export - Product Requirement Document

## Meta
- **Version**: 1.0

## Problem Statement
Users cannot export reports.

## Functional Requirements
- Export the current report as CSV

## Acceptance Criteria
```gherkin
Feature: CSV export
  Scenario: Export
    Given a report
    When I export it
    Then I get a CSV file
```
"""

PASSING_CRITIQUE = '{"confidenceScore": 85, "passedValidation": true, "issues": []}'
QUESTIONS = "1. Which columns should be exported?\n2. Should filters apply?"


class ScriptedChannel:
    """ModelChannel double that replays scripted replies in order."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def invoke(self, prompt, **kwargs):
        self.calls.append({"prompt": prompt, **kwargs})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, ModelReply):
            return reply
        return ModelReply(text=reply)


class SlowChannel:
    async def invoke(self, prompt, **kwargs):
        await asyncio.sleep(5)
        return ModelReply(text="too late")


def _session(replies, **kwargs) -> tuple[RefinementSession, ScriptedChannel]:
    channel = ScriptedChannel(replies)
    session = RefinementSession("refine-t1-1", "t1", "Add CSV export to reports", channel, **kwargs)
    return session, channel


def _types(session: RefinementSession) -> list[str]:
    return [event.type for event in session.events.history]


def _phases(session: RefinementSession) -> list[str]:
    return [event.payload["to"] for event in session.events.events_of("state-change")]


def test_start_with_questions_awaits_user():
    session, channel = _session([QUESTIONS])

    turn = asyncio.run(session.start("// src/reports.ts\nexport class Reports {}"))

    assert session.phase is Phase.AWAITING_USER
    assert turn.role == "analyst"
    assert [question.id for question in session.pending_questions] == ["q-1", "q-2"]
    assert session.current_draft is None
    assert _phases(session) == ["DRAFTING", "AWAITING_USER"]
    assert session.events.events_of("question")[0].payload[1].question == "Should filters apply?"
    assert channel.calls[0]["tools"][0]["function"]["name"] == "ask_clarifying_questions"
    assert "export class Reports" in channel.calls[0]["prompt"]


def test_start_with_structured_questions():
    reply = ModelReply(
        text="",
        structured_calls=[
            {
                "name": "ask_clarifying_questions",
                "arguments": {"questions": [{"question": "Which delimiter?", "options": ["Comma", "Tab"]}]},
            }
        ],
    )
    session, _channel = _session([reply])

    asyncio.run(session.start())

    question = session.events.events_of("question")[0].payload[0]
    assert question.options == ["Comma", "Tab"]
    assert session.turns[-1].content == "1. Which delimiter?"


def test_start_with_draft_stores_draft_and_still_awaits_user():
    session, _channel = _session([DRAFT])

    asyncio.run(session.start())

    assert session.phase is Phase.AWAITING_USER
    assert session.current_draft == DRAFT
    assert "draft-ready" in _types(session)


def test_start_twice_is_invalid():
    session, _channel = _session([QUESTIONS])
    asyncio.run(session.start())
    with pytest.raises(InvalidStateTransition):
        asyncio.run(session.start())


def test_high_confidence_critique_goes_straight_to_refine():
    session, channel = _session([DRAFT, PASSING_CRITIQUE, ARTIFACT])

    async def run():
        await session.start()
        return await session.trigger_critique()

    critique = asyncio.run(run())

    assert critique.confidence_score == 85
    assert session.phase is Phase.AWAITING_USER
    assert session.final_artifact.title == "CSV Export"
    assert _phases(session) == ["DRAFTING", "AWAITING_USER", "CRITIQUING", "REFINING", "AWAITING_USER"]
    assert session.events.events_of("question") == []
    assert len(channel.calls) == 3


def test_low_confidence_prose_critique_asks_questions():
    critique_text = (
        "Overall score: 40. The draft has major issues:\n"
        "- Missing error handling for exports over 100k rows\n"
        "- Conflicting requirements about column order\n"
    )
    session, _channel = _session([DRAFT, critique_text])

    async def run():
        await session.start()
        return await session.trigger_critique()

    critique = asyncio.run(run())

    assert critique.confidence_score == 40
    assert critique.passed_validation is False
    assert session.phase is Phase.AWAITING_USER
    questions = session.events.events_of("question")[-1].payload
    assert [question.id for question in questions] == ["crit-1", "crit-2"]
    assert questions[0].question.startswith("The Critic found an issue: Missing error handling")
    assert questions[1].category == "constraint"
    assert session.final_artifact is None


def test_low_confidence_without_actionable_issues_refines_anyway():
    critique_text = '{"confidenceScore": 50, "passedValidation": false, "issues": [{"type": "ambiguity", "severity": "low", "description": "Wording"}]}'
    session, _channel = _session([DRAFT, critique_text, ARTIFACT])

    async def run():
        await session.start()
        await session.trigger_critique()

    asyncio.run(run())

    assert session.final_artifact is not None
    assert session.events.events_of("question") == []


def test_answer_with_draft_triggers_critique():
    session, channel = _session([QUESTIONS, DRAFT, PASSING_CRITIQUE, ARTIFACT])

    async def run():
        await session.start()
        await session.handle_user_response("All visible columns, filters apply")

    asyncio.run(run())

    assert session.state.iteration_count == 1
    assert session.state.clarifications[0].question_id == "q-1,q-2"
    assert session.final_artifact is not None
    assert _phases(session) == [
        "DRAFTING",
        "AWAITING_USER",
        "DRAFTING",
        "CRITIQUING",
        "REFINING",
        "AWAITING_USER",
    ]
    assert "All visible columns, filters apply" in channel.calls[1]["prompt"]
    assert "All visible columns, filters apply" in channel.calls[3]["prompt"]


def test_iteration_ceiling_forces_refinement():
    session, _channel = _session([QUESTIONS] * 5 + [ARTIFACT, ARTIFACT])

    async def run():
        await session.start()
        for index in range(4):
            await session.handle_user_response(f"answer {index}")
            assert session.phase is Phase.AWAITING_USER
            assert session.final_artifact is None
        await session.handle_user_response("answer 4")

    asyncio.run(run())

    assert session.state.iteration_count == 5
    assert session.phase is Phase.AWAITING_USER
    assert session.current_draft.startswith("# Requirements Draft")
    assert "- answer 4" in session.current_draft
    assert session.final_artifact is not None
    assert any(turn.role == "system" and turn.content == FORCED_REFINE_MESSAGE for turn in session.turns)

    asyncio.run(session.handle_user_response("one more thing"))
    assert session.state.iteration_count == 6
    assert session.phase is Phase.AWAITING_USER


def test_large_draft_is_truncated_for_critique():
    budget = TokenBudgetManager(max_tokens=40_000)
    budget.set_system_prompt_tokens(20_000)
    session, channel = _session([PASSING_CRITIQUE, ARTIFACT], budget=budget)
    session.state.phase = Phase.AWAITING_USER
    session.state.current_draft = "x" * 18_000

    asyncio.run(session.trigger_critique())

    truncation = session.last_draft_truncation
    assert truncation.original_tokens == 4_500
    assert truncation.was_truncated is True
    assert truncation.truncated_tokens <= 3_000
    assert len(channel.calls[0]["prompt"]) < 18_000
    assert any("Draft truncated" in event.payload for event in session.events.events_of("progress"))


def test_refine_uses_chunked_generation_when_budget_is_tight():
    sections = [
        "Users need CSV exports.",
        "## Functional Requirements\n- Export visible rows\n- Include headers",
        "## Non-Functional Requirements\n- Finish within 5 seconds",
        "## Technical Implementation Plan\n### Files to Create\n- `src/csv.ts`",
        "## Acceptance Criteria\n```gherkin\nFeature: Export\n  Scenario: rows\n    Then a file\n```",
    ]
    session, channel = _session(sections, budget=TokenBudgetManager(max_tokens=8_000))
    session.state.phase = Phase.AWAITING_USER
    session.state.current_draft = "# CSV Export\n\n## Problem Statement\n" + "detail " * 1_400

    artifact = asyncio.run(session.trigger_refine())

    assert len(channel.calls) == 5
    assert artifact.title == "CSV Export"
    assert artifact.problem_statement == "Users need CSV exports."
    assert artifact.functional_requirements == ["Export visible rows", "Include headers"]
    assert artifact.technical_plan.files_to_create == ["`src/csv.ts`"]
    assert artifact.acceptance_criteria == ["Feature: Export\n  Scenario: rows\n    Then a file"]
    assert "## Meta" in artifact.raw_markdown
    assert session.turns[-1].metadata["chunked"] is True
    progress = [event.payload for event in session.events.events_of("progress")]
    assert "Generating section 1/5: Problem Statement" in progress
    assert "Users need CSV exports." in channel.calls[1]["prompt"]


def test_invocation_failure_emits_error_and_rolls_back():
    session, _channel = _session([DRAFT, RuntimeError("provider down")])

    async def run():
        await session.start()
        await session.trigger_critique()

    with pytest.raises(ModelInvocationError):
        asyncio.run(run())

    assert session.phase is Phase.AWAITING_USER
    errors = session.events.events_of("error")
    assert len(errors) == 1
    assert "provider down" in errors[0].payload


def test_timeout_surfaces_elapsed_time_and_rolls_back():
    session = RefinementSession(
        "refine-t1-1",
        "t1",
        "Add CSV export",
        SlowChannel(),
        config=RefinementConfig(call_timeout_seconds=0.05),
    )

    with pytest.raises(ModelTimeoutError) as excinfo:
        asyncio.run(session.start())

    assert excinfo.value.timeout_seconds == 0.05
    assert session.phase is Phase.IDLE
    assert "timed out after" in session.events.events_of("error")[0].payload


def test_protocol_preconditions():
    session, _channel = _session([])

    with pytest.raises(InvalidStateTransition):
        asyncio.run(session.handle_user_response("hello"))
    with pytest.raises(MissingDraftError):
        asyncio.run(session.trigger_critique())
    with pytest.raises(MissingArtifactError):
        asyncio.run(session.approve())


def test_approve_and_cancel_are_terminal():
    session, _channel = _session([DRAFT, PASSING_CRITIQUE, ARTIFACT])

    async def run():
        await session.start()
        await session.trigger_critique()
        return await session.approve()

    artifact = asyncio.run(run())

    assert artifact is session.final_artifact
    assert session.phase is Phase.APPROVED
    assert session.events.closed is True
    with pytest.raises(InvalidStateTransition):
        asyncio.run(session.trigger_refine())

    asyncio.run(session.cancel())
    assert session.phase is Phase.CANCELLED


def test_cancel_from_idle():
    session, _channel = _session([])
    asyncio.run(session.cancel())
    assert session.phase is Phase.CANCELLED


FAILING_CRITIQUE = (
    '{"confidenceScore": 45, "passedValidation": false, "issues": '
    '[{"type": "omission", "severity": "high", "description": "No row limit"}]}'
)


def test_critic_sees_draft_when_conversation_nearly_fills_budget():
    budget = TokenBudgetManager(max_tokens=10_000)
    session, channel = _session([DRAFT, FAILING_CRITIQUE], budget=budget)

    async def run():
        await session.start()
        # ~76%: past the point where the stage share hits zero, below the summarization trigger.
        budget.conversation_tokens = 7_600
        await session.trigger_critique()

    asyncio.run(run())

    assert budget.available_tokens_for_stage("critic") == 0
    assert session.last_draft_truncation.was_truncated is False
    assert session.last_draft_truncation.content == DRAFT
    assert "Users cannot export reports." in channel.calls[1]["prompt"]
    assert session.phase is Phase.AWAITING_USER


def test_critique_summarizes_history_before_truncating_draft():
    budget = TokenBudgetManager(max_tokens=10_000, conversation_tokens=8_500)
    session, channel = _session([FAILING_CRITIQUE], budget=budget)
    history = [ConversationTurn(role="user" if i % 2 else "analyst", content=f"turn {i}") for i in range(6)]
    session.state.turns = list(history)
    session.state.phase = Phase.AWAITING_USER
    session.state.current_draft = DRAFT

    asyncio.run(session.trigger_critique())

    turns = session.turns
    assert turns[0].metadata["summary"] is True
    assert turns[0].metadata["summarized_turns"] == 3
    assert turns[1:4] == history[3:]
    assert turns[4].role == "critic"
    assert budget.conversation_tokens < 8_500
    assert DRAFT in channel.calls[0]["prompt"]
    progress = [event.payload for event in session.events.events_of("progress")]
    assert any(message.startswith("Conversation summarized") for message in progress)


def test_model_reply_above_threshold_summarizes_older_turns():
    budget = TokenBudgetManager(max_tokens=100_000, conversation_tokens=82_000)
    session, _channel = _session([QUESTIONS], budget=budget)
    history = [ConversationTurn(role="user", content=f"earlier message {i}") for i in range(5)]
    session.state.turns = list(history)

    asyncio.run(session.start())

    turns = session.turns
    assert len(turns) == 5
    assert turns[0].role == "system"
    assert turns[0].content.startswith("[CONVERSATION SUMMARY]")
    assert "earlier message 0" in turns[0].content
    assert turns[1:4] == history[2:]
    assert turns[4].role == "analyst"
    assert budget.budget_info().utilization_percent <= 80


def test_large_context_uses_compact_analyst_prompt():
    session, channel = _session([QUESTIONS, QUESTIONS])
    asyncio.run(session.start("x" * 24_000))
    assert "(large; skim for names and structure)" in channel.calls[0]["prompt"]
    assert "## Your Task" not in channel.calls[0]["prompt"]

    small, small_channel = _session([QUESTIONS])
    asyncio.run(small.start("// src/reports.ts\nexport class Reports {}"))
    assert "## Your Task" in small_channel.calls[0]["prompt"]


def test_reported_usage_is_charged_to_the_persona():
    reply = ModelReply(text=QUESTIONS, usage=ModelUsage(prompt_tokens=5_000, completion_tokens=120, cost_usd=0.01))
    session, _channel = _session([reply])

    asyncio.run(session.start())

    usage = session.budget.stage_usage["analyst"]
    assert usage.calls == 1
    assert usage.completion_tokens == 120
    assert usage.prompt_tokens == 5_000 - session.budget.system_prompt_tokens
    assert session.budget.total_cost_usd == pytest.approx(0.01)
    progress = [event.payload for event in session.events.events_of("progress")]
    assert any(message.endswith("cost $0.0100") for message in progress)
