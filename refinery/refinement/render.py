"""
Artifact export renderers for PRD and conversation markdown documents.
"""

from __future__ import annotations

import re
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from .core import MissingArtifactError
from .types import SessionState


def _template_env() -> Environment:
    template_dir = Path(__file__).resolve().parent.parent / "templates"
    return Environment(
        loader=FileSystemLoader(str(template_dir)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _sanitize_title(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip())
    cleaned = cleaned.strip("-")
    return cleaned or "refinement-session"


def render_artifact(state: SessionState) -> str:
    if state.final_artifact is None:
        raise MissingArtifactError(f"Session {state.session_id} has no artifact to render")
    template = _template_env().get_template("artifact.md.j2")
    return template.render(state=state, artifact=state.final_artifact)


def render_conversation(state: SessionState) -> str:
    template = _template_env().get_template("conversation.md.j2")
    critique = state.latest_critique.to_dict() if state.latest_critique else None
    return template.render(state=state, critique=critique)


def export_artifact_documents(state: SessionState, output_dir: Path) -> dict[str, Path]:
    if state.final_artifact is None:
        raise MissingArtifactError(f"Session {state.session_id} has no artifact to export")

    target_dir = Path(output_dir).expanduser() / _sanitize_title(state.final_artifact.title)
    target_dir.mkdir(parents=True, exist_ok=True)

    prd_path = target_dir / "PRD.md"
    conversation_path = target_dir / "conversation.md"
    prd_path.write_text(render_artifact(state), encoding="utf-8")
    conversation_path.write_text(render_conversation(state), encoding="utf-8")

    return {
        "prd": prd_path,
        "conversation": conversation_path,
    }
