"""
Refinery CLI - turn vague feature requests into implementation-ready PRDs.

Commands:
    init      - Write a sample refinery.yml in the current repository
    context   - Preview the context package built for a request
    budget    - Show per-stage token allocations for a model
    refine    - Interactive Analyst/Critic/Refiner session
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict
from pathlib import Path

import click
from dotenv import load_dotenv

load_dotenv()

from . import __version__
from .config import CONFIG_FILENAME, RefineryConfig, get_repo_root
from .log import setup_logging
from .refinement.context.builder import ContextRelevanceBuilder
from .refinement.core import TERMINAL_PHASES, ModelInvocationError, ProtocolError
from .refinement.manager import RefinementManager
from .refinement.render import export_artifact_documents
from .refinement.runtime import events
from .refinement.runtime.budget import STAGE_CONTEXT_RATIOS, TokenBudgetManager, estimate_tokens
from .refinement.runtime.events import SessionEvent


SAMPLE_CONFIG = """\
# Refinery Configuration
# API keys are read from the environment (OPENAI_API_KEY, ANTHROPIC_API_KEY, ...)
# See: https://docs.litellm.ai/docs/providers

model:
  name: gpt-4o                 # LiteLLM model string; also selects the token table entry
  fallback_model: gpt-4o-mini  # Used when the primary is not a chat model
  temperature: 0.2
  max_output_tokens: 4000

refinement:
  confidence_threshold: 70     # Critic score needed to go straight to the Refiner
  max_iterations: 5            # Clarification rounds before refinement is forced
  call_timeout_seconds: 300
  compact_context_threshold_tokens: 5000
  summarize_utilization_percent: 80
  keep_recent_turns: 3

context:
  # token_budget: 20000        # Override the Analyst allocation for `refinery context`
  max_keywords: 10
  max_full_files: 10
  max_file_tokens: 5000

output_dir: ./prds
"""


def _load_config() -> RefineryConfig:
    try:
        return RefineryConfig.load(get_repo_root())
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """Refinery - refine feature requests into PRDs with Analyst, Critic and Refiner personas."""
    setup_logging(verbose=verbose)


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize Refinery in the current repository."""
    repo_root = get_repo_root()
    click.echo(f"Initializing Refinery in: {repo_root}")

    config_path = repo_root / CONFIG_FILENAME
    if not config_path.exists() or force:
        config_path.write_text(SAMPLE_CONFIG, encoding="utf-8")
        click.echo(f"  Created: {config_path}")
    else:
        click.echo(f"  Skipped: {config_path} (already exists)")

    click.echo("\nRefinery initialized! Next steps:")
    click.echo(f"  1. Edit {CONFIG_FILENAME} to choose a model")
    click.echo("  2. Set your provider API key (e.g. OPENAI_API_KEY)")
    click.echo('  3. Run: refinery refine "Add CSV export to reports"')


@main.command()
@click.argument("request")
@click.option("--workspace", type=click.Path(file_okay=False, path_type=Path), default=None, help="Workspace root (default: repo root)")
@click.option("--budget", "token_budget", type=int, default=None, help="Token budget for the context package")
@click.option("--json", "as_json", is_flag=True, help="Output metadata as JSON")
def context(request: str, workspace: Path | None, token_budget: int | None, as_json: bool):
    """Preview the relevance-ranked context package for REQUEST."""
    config = _load_config()
    root = (workspace or config.repo_root or get_repo_root()).resolve()
    if token_budget is None:
        token_budget = config.context.token_budget or TokenBudgetManager.for_model(
            config.model.name
        ).available_tokens_for_stage("analyst")

    builder = ContextRelevanceBuilder(root, config=config.context)
    result = asyncio.run(builder.build_context(request, token_budget))

    if as_json:
        data = asdict(result)
        data.pop("content")
        data["token_budget"] = token_budget
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(result.content)
    click.echo(f"\n{'─' * 60}", err=True)
    click.echo(
        f"Keywords: {', '.join(result.keywords) or '(none)'}\n"
        f"Full-content files: {result.full_content_files}, skeletons: {result.skeleton_files}, "
        f"~{result.estimated_tokens:,}/{token_budget:,} tokens",
        err=True,
    )


@main.command()
@click.option("--model", "model_id", default=None, help="Model id (default: configured model)")
def budget(model_id: str | None):
    """Show the token budget and per-stage allocations for a model."""
    config = _load_config()
    model_id = model_id or config.model.name
    manager = TokenBudgetManager.for_model(model_id)

    click.echo(f"Model: {model_id}")
    click.echo(f"  Max tokens: {manager.max_tokens:,}")
    click.echo(f"  Response reserve: {manager.response_reserve:,}")
    for stage, ratio in STAGE_CONTEXT_RATIOS.items():
        click.echo(f"  {stage.capitalize():<8} {manager.available_tokens_for_stage(stage):>10,} tokens ({ratio:.0%})")


def _print_event(event: SessionEvent) -> None:
    payload = event.payload
    if event.type == events.STATE_CHANGE:
        click.echo(click.style(f"  [{payload['from']} -> {payload['to']}]", dim=True))
    elif event.type == events.PROGRESS:
        click.echo(click.style(f"  ⏳ {payload}", dim=True))
    elif event.type == events.QUESTION:
        click.echo("\nQuestions:")
        for index, question in enumerate(payload, start=1):
            click.echo(f"  {index}. {question.question}")
            for option in question.options:
                click.echo(f"       - {option}")
    elif event.type == events.DRAFT_READY:
        click.echo(f"\n📝 Draft ready (~{estimate_tokens(payload):,} tokens)")
    elif event.type == events.CRITIQUE_READY:
        status = "passed" if payload.passed_validation else "needs work"
        click.echo(f"\n🔍 Critique: confidence {payload.confidence_score}/100 ({status})")
        for issue in payload.issues:
            click.echo(f"  - [{issue.severity}/{issue.type}] {issue.description}")
    elif event.type == events.ARTIFACT_READY:
        click.echo(f"\n{'═' * 60}\n{payload.raw_markdown}\n{'═' * 60}")
        click.echo("Type 'approve' to export, 'cancel' to stop, or reply with changes.")
    elif event.type == events.ERROR:
        click.echo(f"  ❌ {payload}", err=True)


@main.command()
@click.argument("request")
@click.option("--workspace", type=click.Path(exists=True, file_okay=False, path_type=Path), default=None, help="Workspace root (default: repo root)")
@click.option("--model", "model_id", default=None, help="Override the configured model")
@click.option("--task-id", default="cli", show_default=True, help="Task reference recorded on the session")
@click.option("--output-dir", type=click.Path(file_okay=False, path_type=Path), default=None, help="Export directory (default: config output_dir)")
def refine(request: str, workspace: Path | None, model_id: str | None, task_id: str, output_dir: Path | None):
    """Run an interactive refinement session for REQUEST."""
    config = _load_config()
    root = (workspace or config.repo_root or get_repo_root()).resolve()
    target_dir = output_dir or config.resolved_output_dir()
    manager = RefinementManager(config, event_callback=_print_event)

    async def run() -> dict[str, Path] | None:
        try:
            session = await manager.start_session_with_smart_context(task_id, request, root, model_id=model_id)
        except (ModelInvocationError, ProtocolError) as exc:
            raise click.ClickException(str(exc)) from exc

        while session.phase not in TERMINAL_PHASES:
            message = await asyncio.to_thread(click.prompt, "\nYou", prompt_suffix="> ")
            try:
                outcome = await manager.handle_user_message(session.session_id, message)
            except ModelInvocationError as exc:
                click.echo(f"Model call failed: {exc}. Reply again to retry, or 'cancel'.", err=True)
                continue
            except ProtocolError as exc:
                raise click.ClickException(str(exc)) from exc

            if outcome == "approved":
                return export_artifact_documents(session.state, target_dir)
            if outcome == "cancelled":
                return None
        return None

    try:
        exported = asyncio.run(run())
    except click.Abort:
        asyncio.run(manager.dispose())
        raise

    if exported is None:
        click.echo("Refinement cancelled.")
        return
    click.echo("\n✅ Approved. Exported:")
    for name, path in exported.items():
        click.echo(f"  {name}: {path}")


if __name__ == "__main__":
    main()
