"""Sequential runs of every saved recipe on one shared browser surface.

Each recipe gets its own playback slot on the surface. A recipe that fails
(missing, broken page, aborted playback) is reported and the sequence moves
on to the next one. A second pass cannot start while one is running.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from .pipeline import ImportBatch, RecipePipeline

if TYPE_CHECKING:
    from .session import AutomationSurface

logger = logging.getLogger(__name__)


@dataclass
class ScheduledRun:
    """Outcome of one recipe within a run-all pass."""

    recipe_id: str
    name: str
    batch: ImportBatch | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.batch is not None and self.batch.importable


class RecipeScheduler:
    """Runs recipes one after another on a shared AutomationSurface."""

    def __init__(self, pipeline: RecipePipeline, surface: "AutomationSurface", pause_seconds: float = 2.0):
        self.pipeline = pipeline
        self.surface = surface
        self.pause_seconds = pause_seconds

        self.current_recipe: str | None = None
        self.last_run_at: datetime | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_all(self, recipe_ids: list[str] | None = None) -> list[ScheduledRun] | None:
        """Run the given recipes (default: all, by name) in sequence.

        Returns:
            One ScheduledRun per recipe, or None when a pass is already running
        """
        if self._running:
            logger.info("Run-all already in progress, skipping")
            return None

        self._running = True
        try:
            targets = await self._targets(recipe_ids)
            logger.info(f"Running {len(targets)} recipes")
            runs: list[ScheduledRun] = []
            for position, (recipe_id, name) in enumerate(targets):
                if position and self.pause_seconds > 0:
                    await asyncio.sleep(self.pause_seconds)
                runs.append(await self._run_one(recipe_id, name))

            self.last_run_at = datetime.now(UTC)
            failed = sum(1 for run in runs if not run.ok)
            logger.info(f"Run-all finished: {len(runs) - failed} ok, {failed} failed")
            return runs
        finally:
            self.current_recipe = None
            self._running = False

    async def _targets(self, recipe_ids: list[str] | None) -> list[tuple[str, str]]:
        if recipe_ids is None:
            recipes = await self.pipeline.store.list_all_async()
            return [(recipe.id, recipe.name) for recipe in sorted(recipes, key=lambda r: r.name.lower())]

        targets = []
        for recipe_id in recipe_ids:
            recipe = await self.pipeline.store.get_async(recipe_id)
            targets.append((recipe_id, recipe.name if recipe else recipe_id))
        return targets

    async def _run_one(self, recipe_id: str, name: str) -> ScheduledRun:
        self.current_recipe = name
        logger.info(f"Running recipe {name} ({recipe_id})")
        try:
            page, cancel_event = await self.surface.start_playback()
            try:
                batch = await self.pipeline.run(recipe_id, page, cancel_event)
            finally:
                self.surface.finish_playback()
        except Exception as e:
            logger.error(f"Recipe {name} failed: {e}")
            return ScheduledRun(recipe_id=recipe_id, name=name, error=str(e) or type(e).__name__)
        return ScheduledRun(recipe_id=recipe_id, name=name, batch=batch)
