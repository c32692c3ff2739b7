"""Data models for playback progress reporting."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class PlaybackOutcome(str, Enum):
    """Overall outcome of a playback run."""

    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    ABORTED = "aborted"


class ProgressEventType(str, Enum):
    """Kinds of events published on the progress channel."""

    STARTED = "started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    STOPPED = "stopped"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class PlaybackSession(BaseModel):
    """Live state of one playback run. Written only by the engine, never persisted."""

    recipe_id: str
    run_id: str
    total_steps: int
    current_step_index: int = 0
    outcome: PlaybackOutcome = PlaybackOutcome.RUNNING
    cancelled: bool = False

    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Run duration in seconds."""
        end = self.completed_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    @property
    def progress_percent(self) -> float:
        """Calculate progress percentage."""
        if self.total_steps <= 0:
            return 0.0
        return min(100.0, (self.current_step_index / self.total_steps) * 100)

    @property
    def is_terminal(self) -> bool:
        return self.outcome != PlaybackOutcome.RUNNING


class ProgressEvent(BaseModel):
    """One notification for an external progress overlay."""

    type: ProgressEventType
    recipe_id: str
    step_index: int
    total_steps: int
    description: str
    outcome: PlaybackOutcome = PlaybackOutcome.RUNNING
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
