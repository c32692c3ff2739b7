"""Tests for the replay, extract and cleanup pipeline."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from browser_bank_recipes.exceptions import RecipeNotFoundError
from browser_bank_recipes.observability import PlaybackOutcome
from browser_bank_recipes.recipes.extractor import PatternExtractor
from browser_bank_recipes.recipes.models import (
    CapturedCoordinates,
    ClickStep,
    ExtractedRow,
    Point,
    TextDescriptor,
    ViewportSnapshot,
)
from browser_bank_recipes.recipes.pipeline import RecipePipeline
from browser_bank_recipes.recipes.playback import PERFORM_ACTION_JS, PlaybackEngine, StepDecision, fixed_decision
from browser_bank_recipes.recipes.selectors import FIND_BY_DESCRIPTOR_JS, HIT_AT_POINT_JS
from browser_bank_recipes.recipes.store import RecipeStore

ACTIVITY_HTML = """
<ul class="activity">
  <li class="transaction"><span>01/15/2024</span><span>Coffee Shop</span><span>-4.50</span></li>
  <li class="transaction"><span>01/14/2024</span><span>Book Store</span><span>-12.00</span></li>
  <li class="transaction"><span>01/13/2024</span><span>Salary Deposit</span><span>2500.00</span></li>
</ul>
"""

COORDS = CapturedCoordinates(point=Point(x=10, y=10), element_center=Point(x=12, y=12), viewport=ViewportSnapshot(width=1280, height=800))


@pytest.fixture
def store(tmp_path):
    return RecipeStore(directory=str(tmp_path))


@pytest.fixture
def recipe_id(store):
    steps = [
        ClickStep(target=TextDescriptor(text="Accounts"), coordinates=COORDS),
        ClickStep(target=TextDescriptor(text="Checking"), coordinates=COORDS),
    ]
    return store.create("Checking", "https://bank.example/login", institution="Example Bank", steps=steps)


@pytest.fixture
def live_page(fake_page):
    fake_page.url = "about:blank"
    fake_page.html = ACTIVITY_HTML
    fake_page.handlers[HIT_AT_POINT_JS] = lambda arg: {"found": True, "tag": "a"}
    fake_page.handlers[PERFORM_ACTION_JS] = lambda arg: {"ok": True}
    return fake_page


def _pipeline(store, settings, decision=StepDecision.ABORT, **kwargs):
    engine = PlaybackEngine(settings=settings, failure_handler=fixed_decision(decision))
    return RecipePipeline(store, engine=engine, **kwargs)


class TestPipeline:
    async def test_completed_run_extracts_and_records(self, store, recipe_id, live_page, fast_playback_settings):
        batch = await _pipeline(store, fast_playback_settings).run(recipe_id, live_page)

        assert live_page.navigations == ["https://bank.example/login"]
        assert batch.importable
        assert batch.outcome == PlaybackOutcome.COMPLETED
        assert [row.description for row in batch.rows] == ["Coffee Shop", "Book Store", "Salary Deposit"]
        assert batch.extraction_method == "pattern"

        recipe = store.get(recipe_id)
        assert recipe.last_run_at is not None
        assert recipe.last_extraction_method == "pattern"

    async def test_partial_run_does_not_extract(self, store, recipe_id, live_page, fast_playback_settings):
        live_page.handlers[HIT_AT_POINT_JS] = lambda arg: {"found": False, "reason": "gone"}
        live_page.handlers[FIND_BY_DESCRIPTOR_JS] = lambda arg: {"found": arg["descriptor"]["text"] == "Accounts"}
        extractor = MagicMock(spec=PatternExtractor)

        batch = await _pipeline(store, fast_playback_settings, StepDecision.SKIP, extractor=extractor).run(recipe_id, live_page)

        assert batch.outcome == PlaybackOutcome.PARTIAL
        assert not batch.importable
        assert batch.rows == []
        assert extractor.extract.call_count == 0
        recipe = store.get(recipe_id)
        assert recipe.last_run_at is not None
        assert recipe.last_extraction_method is None

    async def test_aborted_run_does_not_extract(self, store, recipe_id, live_page, fast_playback_settings):
        live_page.handlers[PERFORM_ACTION_JS] = lambda arg: {"ok": False, "error": "detached"}
        extractor = MagicMock(spec=PatternExtractor)

        batch = await _pipeline(store, fast_playback_settings, extractor=extractor).run(recipe_id, live_page)

        assert batch.outcome == PlaybackOutcome.ABORTED
        extractor.extract.assert_not_called()

    async def test_cleanup_result_replaces_rows(self, store, recipe_id, live_page, fast_playback_settings):
        cleaned = [ExtractedRow(date="2024-01-15", description="Coffee", amount="-4.50")]
        cleanup = MagicMock()
        cleanup.clean = AsyncMock(return_value=cleaned)

        batch = await _pipeline(store, fast_playback_settings, cleanup=cleanup).run(recipe_id, live_page)

        assert batch.rows == cleaned
        assert batch.extraction_method == "pattern+cleanup"
        assert store.get(recipe_id).last_extraction_method == "pattern+cleanup"

    async def test_cleanup_error_keeps_extracted_rows(self, store, recipe_id, live_page, fast_playback_settings):
        cleanup = MagicMock()
        cleanup.clean = AsyncMock(side_effect=RuntimeError("model crashed"))

        batch = await _pipeline(store, fast_playback_settings, cleanup=cleanup).run(recipe_id, live_page)

        assert len(batch.rows) == 3
        assert batch.extraction_method == "pattern"

    async def test_missing_recipe(self, store, live_page, fast_playback_settings):
        with pytest.raises(RecipeNotFoundError):
            await _pipeline(store, fast_playback_settings).run("nope", live_page)
        assert live_page.navigations == []
