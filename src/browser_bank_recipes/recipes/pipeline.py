"""Replay -> extract -> cleanup pipeline producing an import batch."""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from ..config import PlaybackSettings
from ..exceptions import RecipeNotFoundError
from ..observability.logging import bind_run_context, clear_run_context, get_run_logger
from ..observability.models import PlaybackOutcome
from .cleanup import CleanupAdapter, NullCleanupAdapter
from .extractor import EXTRACTION_METHOD, PatternExtractor
from .models import ExtractedRow
from .playback import PageWaiter, PlaybackEngine, PlaybackResult

if TYPE_CHECKING:
    from .page import Page
    from .store import RecipeStore


@dataclass
class ImportBatch:
    """Terminal output handed to the transaction import boundary."""

    recipe_id: str
    outcome: PlaybackOutcome
    rows: list[ExtractedRow] = field(default_factory=list)
    extraction_method: str | None = None
    playback: PlaybackResult | None = None

    @property
    def importable(self) -> bool:
        return self.outcome == PlaybackOutcome.COMPLETED


class RecipePipeline:
    """Runs a stored recipe end to end and returns the extracted rows."""

    def __init__(
        self,
        store: "RecipeStore",
        engine: PlaybackEngine | None = None,
        extractor: PatternExtractor | None = None,
        cleanup: CleanupAdapter | None = None,
        settings: PlaybackSettings | None = None,
    ):
        self.store = store
        self.engine = engine or PlaybackEngine(settings=settings)
        self.extractor = extractor or PatternExtractor()
        self.cleanup = cleanup or NullCleanupAdapter()
        self.settings = settings or self.engine.settings

    async def run(self, recipe_id: str, page: "Page", cancel_event: asyncio.Event | None = None) -> ImportBatch:
        """Replay a recipe and, only if every step succeeded, extract its rows.

        Args:
            recipe_id: Stored recipe to run
            page: Fresh page session
            cancel_event: Cooperative cancel signal

        Returns:
            ImportBatch; rows are empty unless playback completed

        Raises:
            RecipeNotFoundError: If the recipe does not exist
        """
        recipe = await self.store.get_async(recipe_id)
        if recipe is None:
            raise RecipeNotFoundError(recipe_id)

        bind_run_context(uuid.uuid4().hex[:12], recipe.id)
        log = get_run_logger(__name__)
        try:
            log.info("opening_start_page", url=recipe.target_url)
            await page.navigate(recipe.target_url)
            await PageWaiter(self.settings).wait_for_settle(page)
            if self.settings.initial_load_delay > 0:
                await asyncio.sleep(self.settings.initial_load_delay)

            result = await self.engine.run(recipe, page, cancel_event)
            await self.store.update_async(recipe.id, last_run_at=datetime.now(UTC))

            if not result.completed:
                log.info("extraction_skipped", outcome=result.outcome.value, cancelled=result.cancelled)
                return ImportBatch(recipe_id=recipe.id, outcome=result.outcome, playback=result)

            html = await page.content()
            rows = self.extractor.extract(html)
            method = EXTRACTION_METHOD
            if rows and not isinstance(self.cleanup, NullCleanupAdapter):
                try:
                    cleaned = await self.cleanup.clean(rows)
                except Exception as e:
                    log.warning("cleanup_failed", error=str(e))
                    cleaned = rows
                if cleaned is not rows:
                    rows = cleaned
                    method = f"{EXTRACTION_METHOD}+cleanup"

            await self.store.update_async(recipe.id, last_extraction_method=method)
            log.info("extraction_finished", rows=len(rows), method=method)
            return ImportBatch(recipe_id=recipe.id, outcome=result.outcome, rows=rows, extraction_method=method, playback=result)
        finally:
            clear_run_context()
