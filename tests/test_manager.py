from __future__ import annotations

import asyncio

import pytest

from refinery.config import RefineryConfig
from refinery.refinement.core import ModelInvocationError, Phase
from refinery.refinement.manager import RefinementManager, is_approval, is_cancel
from refinery.refinement.runtime.llm import ModelReply

DRAFT = "# Export\n\n## Problem Statement\nNo export.\n\n## Functional Requirements\n- Export CSV\n"
ARTIFACT = "# Export - Product Requirement Document\n\n## Problem Statement\nNo export.\n"


class ScriptedChannel:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def invoke(self, prompt, **kwargs):
        self.calls.append(prompt)
        return ModelReply(text=self.replies.pop(0))


def test_command_detection():
    assert is_approval("LGTM!")
    assert is_approval(" approve the plan. ")
    assert not is_approval("approve it later")
    assert is_cancel("Abort")
    assert is_cancel("stop refinement")
    assert not is_cancel("cancel the subscription feature")


def test_manager_runs_session_to_approval():
    completed = []
    manager = RefinementManager(on_complete=lambda task_id, artifact: completed.append((task_id, artifact.title)))
    channel = ScriptedChannel(["1. Which format?", DRAFT, '{"confidenceScore": 90, "issues": []}', ARTIFACT])

    async def run():
        session = await manager.start_session("task-7", "Add export", channel=channel)
        assert session.session_id.startswith("refine-task-7-")
        assert manager.has_active_session("task-7")
        assert manager.session_for_task("task-7") is session

        # No artifact yet, so "yes" is an ordinary answer.
        assert await manager.handle_user_message(session.session_id, "yes") == "answered"
        assert manager.artifact(session.session_id).title == "Export"
        assert manager.session_draft(session.session_id) == DRAFT
        assert len(manager.conversation_history(session.session_id)) == 6

        assert await manager.handle_user_message(session.session_id, "approve") == "approved"
        return session

    session = asyncio.run(run())

    assert session.phase is Phase.APPROVED
    assert completed == [("task-7", "Export")]
    assert manager.session_state(session.session_id) is None
    assert not manager.has_active_session("task-7")


def test_manager_cancel_and_dispose():
    manager = RefinementManager()

    async def run():
        first = await manager.start_session("a", "Add export", channel=ScriptedChannel(["1. Which format?"]))
        second = await manager.start_session("b", "Add import", channel=ScriptedChannel(["1. Which source?"]))
        assert await manager.handle_user_message(first.session_id, "cancel") == "cancelled"
        await manager.dispose()
        return first, second

    first, second = asyncio.run(run())

    assert first.phase is Phase.CANCELLED
    assert second.phase is Phase.CANCELLED
    assert manager.sessions == {}


def test_manager_uses_channel_factory_and_model_budget():
    requested = []

    def factory(model_id):
        requested.append(model_id)
        return ScriptedChannel(["1. Which format?"])

    manager = RefinementManager(RefineryConfig(), channel_factory=factory)
    session = asyncio.run(manager.start_session("t", "Add export", model_id="claude-3-opus-20240229"))

    assert requested == ["claude-3-opus-20240229"]
    assert session.budget.max_tokens == 200_000


def test_smart_context_requires_workspace_root():
    manager = RefinementManager()
    with pytest.raises(ValueError):
        asyncio.run(manager.start_session_with_smart_context("t", "Add export", None, channel=ScriptedChannel([])))


def test_smart_context_session_uses_workspace(tmp_path):
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    (root / "src" / "exporter.py").write_text("def export_rows(rows):\n    return rows\n", encoding="utf-8")
    channel = ScriptedChannel(["1. Which format?"])
    manager = RefinementManager()

    session = asyncio.run(manager.start_session_with_smart_context("t", "Add export", root, channel=channel))

    assert session.smart_context.relevant_files == ["src/exporter.py"]
    assert "def export_rows(rows):" in channel.calls[0]
    progress = [event.payload for event in session.events.events_of("progress")]
    assert progress[0].startswith("Analyzing codebase in")


def test_unknown_session_raises():
    manager = RefinementManager()
    with pytest.raises(KeyError):
        asyncio.run(manager.handle_user_message("missing", "hello"))


class BrokenChannel:
    async def invoke(self, prompt, **kwargs):
        raise RuntimeError("provider down")


def test_failed_start_does_not_leave_session_registered(tmp_path):
    manager = RefinementManager()
    events = []
    manager.event_callback = events.append

    with pytest.raises(ModelInvocationError):
        asyncio.run(manager.start_session("t1", "Add export", channel=BrokenChannel()))

    assert manager.sessions == {}
    assert manager.has_active_session("t1") is False
    assert any(event.type == "error" for event in events)

    with pytest.raises(ModelInvocationError):
        asyncio.run(manager.start_session_with_smart_context("t2", "Add export", tmp_path, channel=BrokenChannel()))
    assert manager.has_active_session("t2") is False
