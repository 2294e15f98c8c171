"""
Shared data contracts for refinement sessions.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from .core import Phase

Persona = Literal["analyst", "critic", "refiner"]

TURN_ROLES = ("user", "analyst", "critic", "refiner", "system")
QUESTION_CATEGORIES = ("requirement", "constraint", "preference", "technical")
ISSUE_TYPES = ("ambiguity", "contradiction", "omission", "security", "performance", "architecture")
SEVERITIES = ("low", "medium", "high")


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ClarifyingQuestion:
    id: str
    question: str
    category: str = "requirement"
    options: list[str] = field(default_factory=list)
    multi_select: bool = False


@dataclass
class UserClarification:
    question_id: str
    response: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CritiqueIssue:
    type: str
    severity: str
    description: str
    suggestion: str | None = None


@dataclass
class CritiqueResult:
    confidence_score: int
    issues: list[CritiqueIssue] = field(default_factory=list)
    passed_validation: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Wire shape used in Refiner prompts and exported documents."""
        return {
            "confidenceScore": self.confidence_score,
            "passedValidation": self.passed_validation,
            "issues": [
                {key: value for key, value in asdict(issue).items() if value is not None}
                for issue in self.issues
            ],
        }


@dataclass
class TechnicalPlan:
    files_to_create: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    api_changes: list[str] = field(default_factory=list)


@dataclass
class Artifact:
    version: str
    title: str
    problem_statement: str
    functional_requirements: list[str]
    non_functional_requirements: list[str]
    technical_plan: TechnicalPlan
    acceptance_criteria: list[str]
    diagram: str | None
    raw_markdown: str


@dataclass
class SessionState:
    session_id: str
    task_id: str
    original_request: str
    phase: Phase = Phase.IDLE
    turns: list[ConversationTurn] = field(default_factory=list)
    clarifications: list[UserClarification] = field(default_factory=list)
    current_draft: str | None = None
    latest_critique: CritiqueResult | None = None
    final_artifact: Artifact | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    iteration_count: int = 0
