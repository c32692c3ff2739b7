"""CLI interface for recording and replaying bank recipes."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from anyio import to_thread

from .config import CONFIG_FILE, set_config_values, settings
from .exceptions import BankRecipesError, EmptyRecordingError
from .observability import ProgressEvent, setup_structured_logging
from .recipes.cleanup import build_cleanup_adapter
from .recipes.extractor import PatternExtractor
from .recipes.models import InputStep, SelectStep
from .recipes.pipeline import RecipePipeline
from .recipes.playback import FailureHandler, PlaybackEngine, StepDecision, StepFailure, ValueRequest, fixed_decision
from .recipes.recorder import save_recording
from .recipes.scheduler import RecipeScheduler, ScheduledRun
from .recipes.session import AutomationSurface
from .recipes.store import RecipeStore

app = typer.Typer(help="Teach a bank website once, then replay it to fetch transactions")


def get_store() -> RecipeStore:
    return RecipeStore(directory=settings.store.directory)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")) -> None:
    setup_structured_logging("DEBUG" if verbose else settings.logging.level, settings.logging.json_output)


async def ask_operator(failure: StepFailure) -> StepDecision:
    """Ask on the terminal whether to skip the failed step or abort the run."""
    typer.echo(f"\n{failure.description}")
    answer = await to_thread.run_sync(lambda: typer.prompt("Skip & Continue or Abort? [s/a]", default="a"))
    return StepDecision.SKIP if answer.strip().lower().startswith("s") else StepDecision.ABORT


async def ask_value(request: ValueRequest) -> str | None:
    """Ask on the terminal for a value that was not saved with the recipe."""
    answer = await to_thread.run_sync(lambda: typer.prompt(request.prompt, hide_input=True, default="", show_default=False))
    return answer or None


def _failure_handler(on_failure: str | None) -> FailureHandler:
    policy = on_failure or settings.playback.on_failure
    if policy == "ask":
        return ask_operator
    if policy in ("skip", "abort"):
        return fixed_decision(StepDecision(policy))
    raise typer.BadParameter(f"Unknown failure policy: {policy}")


def _build_pipeline(on_failure: str | None, cleanup: bool | None) -> RecipePipeline:
    engine = PlaybackEngine(settings=settings.playback, failure_handler=_failure_handler(on_failure), value_provider=ask_value)
    engine.progress.subscribe(_print_progress)
    return RecipePipeline(get_store(), engine=engine, cleanup=build_cleanup_adapter(settings.cleanup, cleanup))


def _print_progress(event: ProgressEvent) -> None:
    typer.echo(f"[{event.step_index}/{event.total_steps}] {event.description}")


@app.command()
def record(
    url: str = typer.Argument(..., help="Page where the recipe starts (usually the bank's login page)"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Recipe name"),
    institution: Optional[str] = typer.Option(None, "--institution", "-i", help="Bank name"),
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Linked account id"),
    store_secrets: Optional[bool] = typer.Option(
        None, "--store-secrets/--no-store-secrets", help="Save password-like values, or ask for them on every replay"
    ),
) -> None:
    """Open a browser and record the steps you take until you press Enter."""
    recorder_settings = settings.recorder
    if store_secrets is not None:
        recorder_settings = recorder_settings.model_copy(update={"store_sensitive_values": store_secrets})

    async def _record() -> str:
        surface = AutomationSurface(settings.browser.model_copy(update={"headless": False}))
        try:
            recorder = await surface.start_recording(url, recorder_settings)
            recorder.on_step(lambda step: typer.echo(f"  + {step.describe()}"))
            await to_thread.run_sync(lambda: typer.prompt("Recording. Press Enter when the transactions are visible", default="", show_default=False))
            session = await surface.stop_recording()

            recipe_name = name or await to_thread.run_sync(lambda: typer.prompt("Recipe name"))
            return save_recording(get_store(), session, recipe_name, institution=institution, account_id=account)
        finally:
            await surface.close()

    try:
        recipe_id = asyncio.run(_record())
    except EmptyRecordingError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    typer.echo(f"Saved recipe {recipe_id}")


@app.command()
def play(
    recipe_id: str = typer.Argument(..., help="Recipe to replay"),
    cleanup: Optional[bool] = typer.Option(None, "--cleanup/--no-cleanup", help="Run the LLM cleanup pass"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write rows as JSON to this file"),
    on_failure: Optional[str] = typer.Option(None, "--on-failure", help="ask, skip or abort"),
) -> None:
    """Replay a recipe and print the extracted transactions as JSON."""
    pipeline = _build_pipeline(on_failure, cleanup)

    async def _play():
        surface = AutomationSurface(settings.browser)
        try:
            page, cancel_event = await surface.start_playback()
            try:
                return await pipeline.run(recipe_id, page, cancel_event)
            finally:
                surface.finish_playback()
        finally:
            await surface.close()

    try:
        batch = asyncio.run(_play())
    except BankRecipesError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    if not batch.importable:
        typer.echo(f"Playback ended as '{batch.outcome.value}'; nothing extracted.", err=True)
        raise typer.Exit(2)

    content = json.dumps([row.model_dump() for row in batch.rows], indent=2)
    if output:
        output.write_text(content + "\n", encoding="utf-8")
        typer.echo(f"Wrote {len(batch.rows)} rows to {output}")
    else:
        typer.echo(content)


def _report(runs: list[ScheduledRun], output_dir: Path | None) -> None:
    for run in runs:
        if run.ok:
            typer.echo(f"ok      {run.name} ({run.recipe_id}): {len(run.batch.rows)} rows")
            if output_dir:
                output_dir.mkdir(parents=True, exist_ok=True)
                content = json.dumps([row.model_dump() for row in run.batch.rows], indent=2)
                (output_dir / f"{run.recipe_id}.json").write_text(content + "\n", encoding="utf-8")
        else:
            reason = run.error or f"playback ended as '{run.batch.outcome.value}'"
            typer.echo(f"failed  {run.name} ({run.recipe_id}): {reason}")


@app.command("run-all")
def run_all(
    recipe_ids: Optional[list[str]] = typer.Argument(None, help="Recipes to run (default: all)"),
    every: Optional[float] = typer.Option(None, "--every", help="Repeat every N seconds until interrupted"),
    cleanup: Optional[bool] = typer.Option(None, "--cleanup/--no-cleanup", help="Run the LLM cleanup pass"),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="Write each recipe's rows to <id>.json here"),
    on_failure: Optional[str] = typer.Option(None, "--on-failure", help="ask, skip or abort"),
) -> None:
    """Replay every saved recipe in sequence, one browser for all of them."""
    pipeline = _build_pipeline(on_failure, cleanup)

    async def _run_all() -> list[ScheduledRun]:
        surface = AutomationSurface(settings.browser)
        scheduler = RecipeScheduler(pipeline, surface, pause_seconds=settings.playback.between_recipes_delay)
        try:
            while True:
                runs = await scheduler.run_all(recipe_ids or None) or []
                _report(runs, output_dir)
                if every is None:
                    return runs
                typer.echo(f"Next run in {every:g}s")
                await asyncio.sleep(every)
        finally:
            await surface.close()

    try:
        runs = asyncio.run(_run_all())
    except KeyboardInterrupt:
        typer.echo("Stopped.")
        return

    if not runs:
        typer.echo("No recipes saved yet.")
    elif not all(run.ok for run in runs):
        raise typer.Exit(2)


@app.command("list")
def list_recipes() -> None:
    """List saved recipes."""
    recipes = get_store().list_all()
    if not recipes:
        typer.echo("No recipes saved yet.")
        return
    for recipe in recipes:
        last_run = recipe.last_run_at.isoformat(timespec="seconds") if recipe.last_run_at else "never"
        typer.echo(f"{recipe.id}  {recipe.name}  ({recipe.institution or '-'})  {len(recipe.steps)} steps  last run: {last_run}")


@app.command()
def show(recipe_id: str = typer.Argument(..., help="Recipe to show")) -> None:
    """Show a recipe's steps (sensitive values masked)."""
    recipe = get_store().get(recipe_id)
    if recipe is None:
        typer.echo(f"Recipe not found: {recipe_id}", err=True)
        raise typer.Exit(1)

    typer.echo(f"{recipe.name} -> {recipe.target_url}")
    for index, step in enumerate(recipe.steps, start=1):
        marker = ""
        if isinstance(step, (InputStep, SelectStep)):
            marker = " [asked on replay]" if step.value_withheld else " [sensitive]" if step.is_sensitive else ""
        typer.echo(f"  {index}. {step.describe()}{marker}  <{step.target.strategy}: {step.target.key()}>")


@app.command()
def delete(recipe_id: str = typer.Argument(..., help="Recipe to delete")) -> None:
    """Delete a recipe."""
    if not get_store().delete(recipe_id):
        typer.echo(f"Recipe not found: {recipe_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {recipe_id}")


@app.command("export")
def export_recipe(
    recipe_id: str = typer.Argument(..., help="Recipe to export"),
    output: Optional[Path] = typer.Option(None, "--output", "-o"),
) -> None:
    """Export a recipe as YAML (contains sensitive values in cleartext)."""
    try:
        content = get_store().export_yaml(recipe_id)
    except BankRecipesError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    if output:
        output.write_text(content, encoding="utf-8")
        output.chmod(0o600)
        typer.echo(f"Exported {recipe_id} to {output}")
    else:
        typer.echo(content)


@app.command("import")
def import_recipe(path: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML file to import")) -> None:
    """Import a recipe exported with `export`."""
    try:
        recipe = get_store().import_yaml(path.read_text(encoding="utf-8"))
    except (ValueError, BankRecipesError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    typer.echo(f"Imported {recipe.name} as {recipe.id}")


@app.command()
def extract(html_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Saved page HTML")) -> None:
    """Run the pattern extractor on a saved HTML page."""
    rows = PatternExtractor().extract(html_file.read_text(encoding="utf-8", errors="replace"))
    typer.echo(json.dumps([row.model_dump() for row in rows], indent=2))


@app.command()
def config(
    assignments: Optional[list[str]] = typer.Option(None, "--set", help="Save section.key=value to the config file (repeatable)"),
) -> None:
    """Show current configuration, or change it with --set."""
    if assignments:
        try:
            set_config_values(assignments)
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from e
        typer.echo(f"Saved {len(assignments)} setting(s) to {CONFIG_FILE}; they apply from the next command")
        return

    typer.echo(f"Config file: {CONFIG_FILE}")
    typer.echo(f"Recipes dir: {get_store().directory}")
    typer.echo(f"Headless playback: {settings.browser.headless}")
    typer.echo(f"Require coordinates: {settings.playback.require_coordinates}")
    typer.echo(f"On failure: {settings.playback.on_failure}")
    typer.echo(f"Cleanup: {'enabled' if settings.cleanup.enabled else 'disabled'} ({settings.cleanup.model} @ {settings.cleanup.base_url})")


if __name__ == "__main__":
    app()
