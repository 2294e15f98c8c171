from __future__ import annotations

from unittest.mock import patch

import pytest

from refinery.config import RefineryConfig


def test_config_defaults_without_file(tmp_path):
    config = RefineryConfig.load(tmp_path)

    assert config.model.name == "gpt-4o"
    assert config.refinement.confidence_threshold == 70
    assert config.refinement.max_iterations == 5
    assert config.refinement.call_timeout_seconds == 300.0
    assert config.context.max_keywords == 10
    assert config.context.token_budget is None
    assert config.output_dir == "./prds"


def test_config_load_sections(tmp_path):
    (tmp_path / "refinery.yml").write_text(
        """
model:
  name: claude-3-5-sonnet-20241022
  temperature: 0.1
refinement:
  confidence_threshold: 80
  max_iterations: 3
context:
  token_budget: 12000
  max_full_files: 4
output_dir: ./docs/prds
        """.strip()
    )

    config = RefineryConfig.load(tmp_path)

    assert config.model.name == "claude-3-5-sonnet-20241022"
    assert config.model.fallback_model == "gpt-4o-mini"
    assert config.model.temperature == 0.1
    assert config.refinement.confidence_threshold == 80
    assert config.refinement.max_iterations == 3
    assert config.refinement.keep_recent_turns == 3
    assert config.context.token_budget == 12000
    assert config.context.max_full_files == 4
    assert config.resolved_output_dir() == (tmp_path / "docs" / "prds").resolve()


def test_config_empty_sections_fall_back(tmp_path):
    (tmp_path / "refinery.yml").write_text("model:\nrefinement:\n")
    config = RefineryConfig.load(tmp_path)
    assert config.model.name == "gpt-4o"
    assert config.refinement.confidence_threshold == 70


def test_config_rejects_non_mapping(tmp_path):
    (tmp_path / "refinery.yml").write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        RefineryConfig.load(tmp_path)


def test_relative_output_dir_without_repo_root(tmp_path):
    config = RefineryConfig(output_dir="out")
    with patch("refinery.config.get_repo_root", return_value=tmp_path):
        assert config.resolved_output_dir() == (tmp_path / "out").resolve()
