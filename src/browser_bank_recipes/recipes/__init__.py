"""Recipes subsystem: record -> persist -> replay -> extract.

1. RECORD: InteractionRecorder listens to clicks, committed inputs and selects
   in a live page and builds InteractionStep objects with target descriptors
   and coordinates.
2. PERSIST: RecipeStore saves the ordered steps as YAML.
3. REPLAY: PlaybackEngine resolves each step coordinate-first, acts on it,
   waits out navigation and escalates failures to a skip/abort decision.
4. EXTRACT: PatternExtractor mines the final page for repeating
   transaction-shaped rows; an optional cleanup adapter polishes them.
"""

from .cleanup import NullCleanupAdapter, OllamaCleanupAdapter, build_cleanup_adapter
from .extractor import PatternExtractor
from .models import (
    CapturedCoordinates,
    ClickStep,
    CoordinateDescriptor,
    ExtractedRow,
    InputStep,
    Recipe,
    SelectStep,
    SemanticDescriptor,
    StructuralDescriptor,
    TextDescriptor,
)
from .page import CDPPage, Page
from .pipeline import ImportBatch, RecipePipeline
from .playback import PlaybackEngine, PlaybackResult, PlaybackState, StepDecision, StepFailure, ValueRequest, fixed_decision
from .recorder import InteractionRecorder, RecordingSession, collapse_input_runs, save_recording
from .scheduler import RecipeScheduler, ScheduledRun
from .selectors import NotFound, Resolved, ResolutionStrategy, SelectorResolver, describe
from .session import AutomationSurface
from .store import RecipeStore, get_default_recipes_dir

__all__ = [
    # Models
    "Recipe",
    "ClickStep",
    "InputStep",
    "SelectStep",
    "SemanticDescriptor",
    "TextDescriptor",
    "StructuralDescriptor",
    "CoordinateDescriptor",
    "CapturedCoordinates",
    "ExtractedRow",
    # Recording
    "InteractionRecorder",
    "RecordingSession",
    "collapse_input_runs",
    "save_recording",
    # Resolution
    "SelectorResolver",
    "Resolved",
    "NotFound",
    "ResolutionStrategy",
    "describe",
    # Playback
    "PlaybackEngine",
    "PlaybackResult",
    "PlaybackState",
    "StepDecision",
    "StepFailure",
    "ValueRequest",
    "fixed_decision",
    # Extraction
    "PatternExtractor",
    "OllamaCleanupAdapter",
    "NullCleanupAdapter",
    "build_cleanup_adapter",
    # Wiring
    "Page",
    "CDPPage",
    "AutomationSurface",
    "RecipePipeline",
    "ImportBatch",
    "RecipeScheduler",
    "ScheduledRun",
    "RecipeStore",
    "get_default_recipes_dir",
]
