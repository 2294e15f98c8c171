from __future__ import annotations

import pytest

from refinery.refinement.core import MissingArtifactError, Phase
from refinery.refinement.render import export_artifact_documents, render_artifact, render_conversation
from refinery.refinement.runtime.parsing import parse_artifact
from refinery.refinement.types import ConversationTurn, CritiqueIssue, CritiqueResult, SessionState

DOCUMENT = """# CSV Export: Reports - Product Requirement Document

## Problem Statement
Users cannot export reports.

## Functional Requirements
- Export CSV
"""


def _state() -> SessionState:
    state = SessionState(session_id="refine-t1-1", task_id="t1", original_request="Add CSV export")
    state.phase = Phase.AWAITING_USER
    state.turns = [
        ConversationTurn(role="user", content="Add CSV export"),
        ConversationTurn(role="analyst", content="1. Which columns?"),
        ConversationTurn(role="refiner", content=DOCUMENT),
    ]
    state.latest_critique = CritiqueResult(
        confidence_score=82,
        passed_validation=True,
        issues=[CritiqueIssue(type="omission", severity="medium", description="No row limit")],
    )
    state.final_artifact = parse_artifact(DOCUMENT)
    return state


def test_render_artifact_uses_raw_document():
    rendered = render_artifact(_state())
    assert rendered.startswith("# CSV Export: Reports - Product Requirement Document")
    assert "Session `refine-t1-1` for task `t1`" in rendered


def test_render_conversation_lists_turns_and_critique():
    rendered = render_conversation(_state())
    assert "Phase: `AWAITING_USER`" in rendered
    assert "## Analyst" in rendered
    assert "1. Which columns?" in rendered
    assert "- Confidence: 82/100" in rendered
    assert "- [medium/omission] No row limit" in rendered


def test_export_writes_documents_under_sanitized_title(tmp_path):
    paths = export_artifact_documents(_state(), tmp_path / "prds")

    assert paths["prd"] == tmp_path / "prds" / "CSV-Export-Reports" / "PRD.md"
    assert paths["prd"].read_text(encoding="utf-8").startswith("# CSV Export")
    assert "# Conversation" in paths["conversation"].read_text(encoding="utf-8")


def test_export_requires_artifact(tmp_path):
    state = SessionState(session_id="s", task_id="t", original_request="r")
    with pytest.raises(MissingArtifactError):
        export_artifact_documents(state, tmp_path)
