"""Playback engine: replays a recipe's steps against a live page.

State machine: Idle -> Running -> {Completed, PartialFailure, Aborted} -> Idle.

Per step the engine resolves the target (coordinate-first, see selectors.py),
highlights it and performs the action. When resolution or the action fails the
engine checks whether the page URL changed meanwhile; a navigation means the
step most likely worked and interrupted its own completion. Otherwise the
failure goes to a FailureHandler which answers SKIP or ABORT. After every step
the engine waits (bounded) for loading to finish, the document to be ready and
a short settle delay.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..config import PlaybackSettings
from ..exceptions import PageError
from ..observability.logging import get_run_logger
from ..observability.models import PlaybackOutcome, PlaybackSession, ProgressEvent, ProgressEventType
from ..observability.progress import ProgressChannel
from .models import MASK, REDACTED, ClickStep, InputStep
from .selectors import TARGET_ATTRIBUTE, NotFound, Resolved, SelectorResolver

if TYPE_CHECKING:
    from .models import InteractionStep, Recipe
    from .page import Page

logger = logging.getLogger(__name__)

HIGHLIGHT_STYLE = "3px solid #10b981"

PERFORM_ACTION_JS = r"""
function (arg) {
  const el = document.querySelector(arg.selector);
  if (!el) return {ok: false, error: 'resolved element is no longer in the page'};
  el.removeAttribute(arg.attribute);
  try { el.scrollIntoView({block: 'center', inline: 'center'}); } catch (e) {}
  const previousOutline = el.style.outline;
  el.style.outline = arg.highlight;
  setTimeout(() => { el.style.outline = previousOutline; }, arg.highlightMs);

  const fire = (type) => el.dispatchEvent(new Event(type, {bubbles: true}));
  if (arg.kind === 'click') {
    el.click();
    return {ok: true};
  }
  if (arg.kind === 'input') {
    el.focus();
    if (el.isContentEditable) {
      el.textContent = arg.value;
    } else {
      const proto = el.tagName === 'TEXTAREA' ? HTMLTextAreaElement.prototype : HTMLInputElement.prototype;
      const setter = Object.getOwnPropertyDescriptor(proto, 'value').set;
      setter.call(el, '');
      setter.call(el, arg.value);
    }
    fire('input');
    fire('change');
    el.dispatchEvent(new FocusEvent('blur'));
    el.blur();
    return {ok: true};
  }
  if (arg.kind === 'select') {
    const options = Array.from(el.options || []);
    let option = options.find((o) => o.value === arg.value);
    if (!option) option = options.find((o) => (o.textContent || '').trim() === arg.value);
    if (!option) return {ok: false, error: 'option not available'};
    const setter = Object.getOwnPropertyDescriptor(HTMLSelectElement.prototype, 'value').set;
    setter.call(el, option.value);
    fire('input');
    fire('change');
    return {ok: true};
  }
  return {ok: false, error: 'unknown step kind ' + arg.kind};
}
"""


class PlaybackState(str, Enum):
    """Engine states."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


_OUTCOME_FOR_STATE = {
    PlaybackState.COMPLETED: PlaybackOutcome.COMPLETED,
    PlaybackState.PARTIAL_FAILURE: PlaybackOutcome.PARTIAL,
    PlaybackState.ABORTED: PlaybackOutcome.ABORTED,
}


class StepDecision(str, Enum):
    """Operator answer to a failed step."""

    SKIP = "skip"
    ABORT = "abort"


class StepStatus(str, Enum):
    EXECUTED = "executed"
    NAVIGATED = "navigated"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class StepFailure:
    """Structured description of a step that could not be replayed."""

    step_index: int
    total_steps: int
    step: "InteractionStep"
    reason: str

    @property
    def description(self) -> str:
        return f"Step {self.step_index + 1}/{self.total_steps} failed ({self.step.describe()}): {self.reason}"


FailureHandler = Callable[[StepFailure], Awaitable[StepDecision]]


@dataclass(frozen=True, slots=True)
class ValueRequest:
    """A step whose value was not stored and has to be supplied by the operator."""

    step_index: int
    total_steps: int
    step: "InteractionStep"

    @property
    def prompt(self) -> str:
        return f"Step {self.step_index + 1}/{self.total_steps}: enter {self.step.label}"


ValueProvider = Callable[[ValueRequest], Awaitable[str | None]]


def fixed_decision(decision: StepDecision) -> FailureHandler:
    """Failure handler that always answers ``decision`` (unattended runs)."""

    async def _handler(failure: StepFailure) -> StepDecision:
        logger.info(f"{failure.description} -> {decision.value}")
        return decision

    return _handler


@dataclass
class StepResult:
    index: int
    status: StepStatus
    strategy: str | None = None
    error: str | None = None


@dataclass
class PlaybackResult:
    """Final state of a playback run."""

    state: PlaybackState
    session: PlaybackSession
    steps: list[StepResult] = field(default_factory=list)

    @property
    def outcome(self) -> PlaybackOutcome:
        return self.session.outcome

    @property
    def completed(self) -> bool:
        return self.state == PlaybackState.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.session.cancelled


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    ok: bool
    error: str | None = None


async def perform_action(
    page: "Page", resolved: Resolved, step: "InteractionStep", highlight_ms: int = 500, value: str | None = None
) -> ActionOutcome:
    """Scroll to, highlight and act on a resolved element.

    ``value`` replaces the recorded value of an input or select step.

    Raises:
        PageError: If the script cannot be evaluated (e.g. the page navigated away)
    """
    if isinstance(step, ClickStep):
        kind, value = "click", None
    else:
        kind = "input" if isinstance(step, InputStep) else "select"
        value = step.value if value is None else value

    arg: dict[str, Any] = {
        "selector": resolved.selector,
        "attribute": TARGET_ATTRIBUTE,
        "kind": kind,
        "value": value,
        "highlight": HIGHLIGHT_STYLE,
        "highlightMs": highlight_ms,
    }
    result = await page.call_function(PERFORM_ACTION_JS, arg)
    if not isinstance(result, dict):
        return ActionOutcome(ok=False, error="action script returned no result")
    return ActionOutcome(ok=bool(result.get("ok")), error=result.get("error"))


def _redact(error: str | None, step: "InteractionStep", value: str | None = None) -> str | None:
    """Replace sensitive values in a failure reason with the mask."""
    if not error or isinstance(step, ClickStep):
        return error
    secrets = [v for v in (value, step.value if step.is_sensitive else None) if v and v != REDACTED]
    for secret in secrets:
        error = error.replace(secret, MASK)
    return error


class PageWaiter:
    """Bounded waits for page load, document ready and async re-rendering."""

    def __init__(self, settings: PlaybackSettings):
        self.settings = settings

    async def wait_for_settle(self, page: "Page") -> None:
        """Wait until the page stops loading, is complete, then settle. Never raises on timeout."""
        if not await self._poll(page, lambda state: state != "loading", self.settings.load_timeout):
            logger.info(f"Page still loading after {self.settings.load_timeout}s, continuing")
        if not await self._poll(page, lambda state: state == "complete", self.settings.ready_timeout):
            logger.info(f"Document not ready after {self.settings.ready_timeout}s, continuing")
        if self.settings.settle_delay > 0:
            await asyncio.sleep(self.settings.settle_delay)

    async def _poll(self, page: "Page", predicate: Callable[[str | None], bool], timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                if predicate(await page.ready_state()):
                    return True
            except PageError as e:
                # Context is usually being replaced by a navigation
                logger.debug(f"readyState unavailable: {e}")
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.settings.poll_interval)


class PlaybackEngine:
    """Executes recipes step by step against a live page."""

    def __init__(
        self,
        settings: PlaybackSettings | None = None,
        resolver: SelectorResolver | None = None,
        failure_handler: FailureHandler | None = None,
        progress: ProgressChannel | None = None,
        value_provider: ValueProvider | None = None,
    ):
        self.settings = settings or PlaybackSettings()
        self.resolver = resolver or SelectorResolver()
        self.failure_handler = failure_handler or fixed_decision(StepDecision.ABORT)
        self.progress = progress or ProgressChannel()
        self.value_provider = value_provider
        self.waiter = PageWaiter(self.settings)

        self.state = PlaybackState.IDLE
        self.session: PlaybackSession | None = None
        self._cancel_event: asyncio.Event | None = None

    def cancel(self) -> None:
        """Request cancellation; honoured before the next step starts."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def run(self, recipe: "Recipe", page: "Page", cancel_event: asyncio.Event | None = None) -> PlaybackResult:
        """Replay every step of ``recipe`` in order.

        Args:
            recipe: Recipe to replay
            page: Live page, already showing the recipe's start page
            cancel_event: Optional external cancel signal

        Returns:
            PlaybackResult with the terminal state and per-step results
        """
        if self.state == PlaybackState.RUNNING:
            raise RuntimeError("Playback already running")

        self._cancel_event = cancel_event or asyncio.Event()
        session = PlaybackSession(recipe_id=recipe.id, run_id=uuid.uuid4().hex[:12], total_steps=len(recipe.steps))
        self.session = session
        self.state = PlaybackState.RUNNING
        log = get_run_logger(__name__)
        log.info("playback_started", recipe=recipe.name, total_steps=session.total_steps)
        self._publish(ProgressEventType.STARTED, f"Starting '{recipe.name}'")

        results: list[StepResult] = []
        skipped = False
        final_state = PlaybackState.COMPLETED

        try:
            for index, step in enumerate(recipe.steps):
                if self._cancel_event.is_set():
                    session.cancelled = True
                    final_state = PlaybackState.ABORTED
                    break

                session.current_step_index = index
                self._publish(ProgressEventType.STEP_STARTED, step.describe())

                result = await self._execute_step(page, step, index)
                if result.status == StepStatus.FAILED:
                    failure = StepFailure(step_index=index, total_steps=session.total_steps, step=step, reason=result.error or "unknown error")
                    log.warning("step_failed", step=index + 1, reason=failure.reason)
                    self._publish(ProgressEventType.STEP_FAILED, failure.description)

                    decision = await self.failure_handler(failure)
                    if decision == StepDecision.ABORT:
                        results.append(result)
                        final_state = PlaybackState.ABORTED
                        break

                    result.status = StepStatus.SKIPPED
                    skipped = True
                    self._publish(ProgressEventType.STEP_SKIPPED, f"Skipped: {step.describe()}")
                else:
                    log.info("step_completed", step=index + 1, status=result.status.value, strategy=result.strategy)

                results.append(result)
                await self.waiter.wait_for_settle(page)
                session.current_step_index = index + 1
                if result.status != StepStatus.SKIPPED:
                    self._publish(ProgressEventType.STEP_COMPLETED, step.describe())
            else:
                final_state = PlaybackState.PARTIAL_FAILURE if skipped else PlaybackState.COMPLETED
        except BaseException as e:
            if isinstance(e, asyncio.CancelledError):
                session.cancelled = True
            else:
                log.error("playback_error", step=session.current_step_index + 1, error_type=type(e).__name__)
            final_state = PlaybackState.ABORTED
            self._finish(session, final_state, log)
            raise

        self._finish(session, final_state, log)
        return PlaybackResult(state=final_state, session=session, steps=results)

    def _finish(self, session: PlaybackSession, final_state: PlaybackState, log: Any) -> None:
        session.outcome = _OUTCOME_FOR_STATE[final_state]
        session.completed_at = datetime.now(UTC)

        if session.cancelled:
            self._publish(ProgressEventType.CANCELLED, "Playback cancelled")
        elif final_state == PlaybackState.ABORTED:
            self._publish(ProgressEventType.ABORTED, "Playback aborted")
        else:
            self._publish(ProgressEventType.STOPPED, f"Playback finished: {session.outcome.value}")

        log.info("playback_finished", outcome=session.outcome.value, cancelled=session.cancelled, duration=session.duration_seconds)
        self.state = PlaybackState.IDLE
        self._cancel_event = None

    async def _execute_step(self, page: "Page", step: "InteractionStep", index: int) -> StepResult:
        if step.coordinates is None and self.settings.require_coordinates:
            return StepResult(index=index, status=StepStatus.FAILED, error="step has no recorded coordinates")

        value: str | None = None
        if not isinstance(step, ClickStep) and step.value_withheld:
            value = await self._ask_value(step, index)
            if value is None:
                return StepResult(index=index, status=StepStatus.FAILED, error=f"no value provided for {step.label}")

        url_before = await page.current_url()
        error: str | None = None
        try:
            resolution = await self.resolver.resolve(page, step)
            if isinstance(resolution, NotFound):
                error = f"target not found ({resolution.reason})"
            else:
                outcome = await perform_action(page, resolution, step, self.settings.highlight_ms, value=value)
                if outcome.ok:
                    return StepResult(index=index, status=StepStatus.EXECUTED, strategy=resolution.strategy.value)
                error = outcome.error or "action failed"
        except PageError as e:
            error = str(e)
        error = _redact(error, step, value)

        if await self._url_changed(page, url_before):
            logger.info(f"Step {index + 1} interrupted by navigation, treating as success")
            return StepResult(index=index, status=StepStatus.NAVIGATED, error=error)
        return StepResult(index=index, status=StepStatus.FAILED, error=error)

    async def _ask_value(self, step: "InteractionStep", index: int) -> str | None:
        if self.value_provider is None:
            logger.warning(f"Step {index + 1} needs a value for {step.label} but no value provider is set")
            return None
        total = self.session.total_steps if self.session else index + 1
        return await self.value_provider(ValueRequest(step_index=index, total_steps=total, step=step))

    async def _url_changed(self, page: "Page", url_before: str | None) -> bool:
        if not url_before:
            return False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.navigation_check_timeout
        while True:
            url_after = await page.current_url()
            if url_after and url_after != url_before:
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.settings.poll_interval)

    def _publish(self, event_type: ProgressEventType, description: str) -> None:
        session = self.session
        if session is None:
            return
        self.progress.publish(
            ProgressEvent(
                type=event_type,
                recipe_id=session.recipe_id,
                step_index=session.current_step_index,
                total_steps=session.total_steps,
                description=description,
                outcome=session.outcome,
            )
        )
