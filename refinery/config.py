"""
Configuration management for Refinery.

Loads and validates:
- refinery.yml: Main configuration (model, refinement protocol, context building)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


CONFIG_FILENAME = "refinery.yml"


@dataclass
class ModelConfig:
    """LLM configuration using LiteLLM."""

    name: str = "gpt-4o"
    fallback_model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_output_tokens: int = 4000


@dataclass
class RefinementConfig:
    """Analyst/Critic/Refiner protocol settings."""

    confidence_threshold: int = 70
    max_iterations: int = 5
    call_timeout_seconds: float = 300.0
    compact_context_threshold_tokens: int = 5000
    summarize_utilization_percent: int = 80
    keep_recent_turns: int = 3
    max_critique_questions: int = 3
    verbatim_clarifications: int = 5
    chunk_budget_ratio: float = 0.8
    min_artifact_tokens: int = 2000


@dataclass
class ContextConfig:
    """Workspace context building limits."""

    token_budget: int | None = None  # None = analyst allocation for the model
    max_keywords: int = 10
    max_full_files: int = 10
    max_file_tokens: int = 5000
    full_content_ratio: float = 0.7
    max_files_per_keyword: int = 300
    max_matches_per_keyword: int = 100
    max_listed_files: int = 500
    min_full_content_score: int = 10


@dataclass
class RefineryConfig:
    """Complete Refinery configuration."""

    model: ModelConfig = field(default_factory=ModelConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    output_dir: str = "./prds"
    repo_root: Path | None = None

    def resolved_output_dir(self) -> Path:
        path = Path(self.output_dir).expanduser()
        if not path.is_absolute():
            path = (self.repo_root or get_repo_root()) / path
        return path.resolve()

    @classmethod
    def load(cls, repo_root: Path) -> "RefineryConfig":
        """Load configuration from repo root directory."""
        config = cls(repo_root=repo_root.resolve())

        main_config_path = repo_root / CONFIG_FILENAME
        if main_config_path.exists():
            with open(main_config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"{CONFIG_FILENAME} must contain a mapping at the top level")
            config = cls._parse_main_config(data, repo_root=repo_root.resolve())

        return config

    @classmethod
    def _parse_main_config(cls, data: dict[str, Any], repo_root: Path) -> "RefineryConfig":
        config = cls(repo_root=repo_root)
        config.output_dir = data.get("output_dir", "./prds")

        model_data = data.get("model", {}) or {}
        config.model = ModelConfig(
            name=model_data.get("name", "gpt-4o"),
            fallback_model=model_data.get("fallback_model", "gpt-4o-mini"),
            temperature=model_data.get("temperature", 0.2),
            max_output_tokens=model_data.get("max_output_tokens", 4000),
        )

        refinement_data = data.get("refinement", {}) or {}
        config.refinement = RefinementConfig(
            confidence_threshold=refinement_data.get("confidence_threshold", 70),
            max_iterations=refinement_data.get("max_iterations", 5),
            call_timeout_seconds=refinement_data.get("call_timeout_seconds", 300.0),
            compact_context_threshold_tokens=refinement_data.get(
                "compact_context_threshold_tokens",
                5000,
            ),
            summarize_utilization_percent=refinement_data.get("summarize_utilization_percent", 80),
            keep_recent_turns=refinement_data.get("keep_recent_turns", 3),
            max_critique_questions=refinement_data.get("max_critique_questions", 3),
            verbatim_clarifications=refinement_data.get("verbatim_clarifications", 5),
            chunk_budget_ratio=refinement_data.get("chunk_budget_ratio", 0.8),
            min_artifact_tokens=refinement_data.get("min_artifact_tokens", 2000),
        )

        context_data = data.get("context", {}) or {}
        config.context = ContextConfig(
            token_budget=context_data.get("token_budget"),
            max_keywords=context_data.get("max_keywords", 10),
            max_full_files=context_data.get("max_full_files", 10),
            max_file_tokens=context_data.get("max_file_tokens", 5000),
            full_content_ratio=context_data.get("full_content_ratio", 0.7),
            max_files_per_keyword=context_data.get("max_files_per_keyword", 300),
            max_matches_per_keyword=context_data.get("max_matches_per_keyword", 100),
            max_listed_files=context_data.get("max_listed_files", 500),
            min_full_content_score=context_data.get("min_full_content_score", 10),
        )

        return config


def get_repo_root() -> Path:
    """Find the repository root (directory containing .git)."""

    current = Path.cwd()
    while current != current.parent:
        if (current / ".git").exists():
            return current
        current = current.parent
    return Path.cwd()
