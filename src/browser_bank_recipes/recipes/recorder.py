"""Interaction recorder for capturing user clicks, inputs and selects in a live page.

The recorder injects a listener script into the page (and into every later
document through an init script) and receives raw events through a CDP
binding. Everything that decides what becomes a step happens on the Python
side in ``handle_event()``:

- events inside the tool's own overlay controls are dropped
- text inputs only arrive once committed (change/blur), never per keystroke
- a repeated commit with the same value for the same target within the
  debounce window is dropped
- password-like fields are flagged ``is_sensitive`` (masked in logs/UI); with
  ``store_sensitive_values=False`` their value is replaced by ``REDACTED``

At save time ``collapse_input_runs()`` removes the remaining consecutive
input steps for the same field, keeping the final value.
"""

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..exceptions import EmptyRecordingError, RecordingStateError
from .models import REDACTED, ClickStep, CoordinateDescriptor, InputStep, Recipe, SelectStep
from .selectors import ELEMENT_FACTS_JS, RESERVED_CLASSES, RESERVED_ELEMENT_IDS, capture_coordinates, describe

if TYPE_CHECKING:
    from .models import InteractionStep
    from .page import Page
    from .store import RecipeStore

logger = logging.getLogger(__name__)

BINDING_NAME = "__bankRecipesRecord"

_SENSITIVE_AUTOCOMPLETE = frozenset({"current-password", "new-password", "one-time-code"})
_SENSITIVE_KEYWORDS = ("password", "pin")

StepListener = Callable[["InteractionStep"], None]

RECORDER_JS = r"""
(() => {
  const CONFIG = %s;
  const elementFacts = %s;
  if (window.__bankRecipesRecorder) window.__bankRecipesRecorder.dispose();

  const NON_TEXT = ['checkbox', 'radio', 'submit', 'button', 'file', 'image', 'reset', 'range', 'color', 'hidden'];
  const isTextField = (el) => el && (el.tagName === 'TEXTAREA' ||
    (el.tagName === 'INPUT' && !NON_TEXT.includes((el.type || '').toLowerCase())));
  const pending = new WeakMap();

  const emit = (kind, el, ev, value) => {
    try {
      const point = ev && ev.clientX != null && ev.type === 'click' ? {x: ev.clientX, y: ev.clientY} : null;
      const payload = {
        kind: kind,
        value: value,
        facts: elementFacts(el, point, CONFIG.labelRadius, CONFIG.reserved),
        url: location.href,
        capturedAt: Date.now(),
      };
      window[CONFIG.binding](JSON.stringify(payload));
    } catch (e) {}
  };

  const commit = (el, ev) => {
    pending.delete(el);
    emit('input', el, ev, el.value);
  };

  const onClick = (ev) => {
    const t = ev.target;
    if (!t || !t.tagName || !ev.isTrusted) return;
    if (isTextField(t) || t.tagName === 'SELECT' || t.tagName === 'OPTION') return;
    emit('click', t, ev, null);
  };

  const onInput = (ev) => {
    const t = ev.target;
    if (isTextField(t)) pending.set(t, t.value);
  };

  const onChange = (ev) => {
    const t = ev.target;
    if (!t || !t.tagName) return;
    if (t.tagName === 'SELECT') emit('select', t, ev, t.value);
    else if (isTextField(t)) commit(t, ev);
  };

  const onBlur = (ev) => {
    const t = ev.target;
    if (isTextField(t) && pending.has(t)) commit(t, ev);
  };

  const options = {capture: true, passive: true};
  window.addEventListener('click', onClick, options);
  window.addEventListener('input', onInput, options);
  window.addEventListener('change', onChange, options);
  window.addEventListener('blur', onBlur, options);

  window.__bankRecipesRecorder = {
    dispose() {
      window.removeEventListener('click', onClick, options);
      window.removeEventListener('input', onInput, options);
      window.removeEventListener('change', onChange, options);
      window.removeEventListener('blur', onBlur, options);
      delete window.__bankRecipesRecorder;
    },
  };
})();
"""

DISPOSE_JS = "window.__bankRecipesRecorder && window.__bankRecipesRecorder.dispose()"


def build_recorder_script(binding: str = BINDING_NAME, label_radius: int = 200) -> str:
    config = {
        "binding": binding,
        "labelRadius": label_radius,
        "reserved": {"ids": list(RESERVED_ELEMENT_IDS), "classes": list(RESERVED_CLASSES)},
    }
    return RECORDER_JS % (json.dumps(config), ELEMENT_FACTS_JS)


def is_sensitive_field(facts: Mapping[str, Any]) -> bool:
    """Return True for password/PIN-like fields."""
    if str(facts.get("type") or "").lower() == "password":
        return True
    if str(facts.get("autocomplete") or "").lower() in _SENSITIVE_AUTOCOMPLETE:
        return True
    for key in ("name", "placeholder"):
        value = str(facts.get(key) or "").lower()
        if any(keyword in value for keyword in _SENSITIVE_KEYWORDS):
            return True
    return False


def field_label_for(facts: Mapping[str, Any]) -> str | None:
    """Best-effort human-readable label for progress text and prompts."""
    clickable = facts.get("clickable")
    candidates = [
        facts.get("labelFor"),
        facts.get("nearbyLabel"),
        facts.get("ariaLabel"),
        facts.get("placeholder"),
        clickable.get("text") if isinstance(clickable, Mapping) else None,
        facts.get("name"),
        facts.get("text"),
    ]
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return " ".join(candidate.split())[:80]
    return None


def target_key(step: "InteractionStep") -> str:
    """Identity of a step's target, used for debounce and run collapsing."""
    if isinstance(step.target, CoordinateDescriptor) and step.coordinates is not None:
        center = step.coordinates.element_center
        return f"coordinates:{round(center.x)}:{round(center.y)}"
    return step.target.key()


def collapse_input_runs(steps: list["InteractionStep"]) -> list["InteractionStep"]:
    """Collapse consecutive input steps on the same field, keeping the last value.

    Example:
        [input(A,"j"), input(A,"jo"), input(A,"joh"), click(B)] -> [input(A,"joh"), click(B)]
    """
    collapsed: list[InteractionStep] = []
    for step in steps:
        if (
            collapsed
            and isinstance(step, InputStep)
            and isinstance(collapsed[-1], InputStep)
            and target_key(collapsed[-1]) == target_key(step)
        ):
            collapsed[-1] = step
            continue
        collapsed.append(step)
    return collapsed


@dataclass
class RecordingSession:
    """In-memory capture context. Exists from start of recording until saved or cancelled."""

    target_url: str
    steps: list = field(default_factory=list)
    is_active: bool = True

    def add(self, step: "InteractionStep") -> None:
        if not self.is_active:
            raise RecordingStateError("Recording session is no longer active")
        self.steps.append(step)

    def finalized_steps(self) -> list["InteractionStep"]:
        return collapse_input_runs(self.steps)

    def to_recipe(self, name: str, institution: str | None = None, account_id: str | None = None) -> Recipe:
        """Build a Recipe from the captured steps.

        Raises:
            EmptyRecordingError: If no steps were captured
        """
        steps = self.finalized_steps()
        if not steps:
            raise EmptyRecordingError("No steps were recorded; nothing to save")
        return Recipe(
            name=name,
            target_url=self.target_url,
            institution=institution,
            linked_account_id=account_id,
            steps=steps,
        )

    def cancel(self) -> None:
        self.is_active = False
        self.steps.clear()


def save_recording(
    store: "RecipeStore",
    session: RecordingSession,
    name: str,
    institution: str | None = None,
    account_id: str | None = None,
) -> str:
    """Persist a finished recording and close the session.

    Returns:
        The new recipe id

    Raises:
        EmptyRecordingError: If no steps were captured
    """
    steps = session.finalized_steps()
    if not steps:
        raise EmptyRecordingError("No steps were recorded; nothing to save")
    recipe_id = store.create(name, session.target_url, institution=institution, steps=steps, account_id=account_id)
    session.is_active = False
    return recipe_id


class InteractionRecorder:
    """Captures user interactions from a live page into a RecordingSession.

    Usage:
        session = RecordingSession(target_url=url)
        recorder = InteractionRecorder(session)
        await recorder.attach(page)
        ...  # user interacts with the page
        await recorder.detach()
        recipe_id = save_recording(store, session, name="Checking")
    """

    def __init__(
        self,
        session: RecordingSession,
        debounce_seconds: float = 2.0,
        label_radius_px: int = 200,
        store_sensitive_values: bool = True,
    ):
        self.session = session
        self.debounce_ms = debounce_seconds * 1000.0
        self.label_radius_px = label_radius_px
        # When False, sensitive values are saved as REDACTED and asked for at playback
        self.store_sensitive_values = store_sensitive_values

        self._page: Page | None = None
        self._script_id: str | None = None
        self._listeners: list[StepListener] = []
        self._last_input: dict[str, tuple[str, float]] = {}

    @property
    def is_attached(self) -> bool:
        return self._page is not None

    def on_step(self, listener: StepListener) -> None:
        """Register a callback invoked for every committed step."""
        self._listeners.append(listener)

    async def attach(self, page: "Page") -> None:
        """Start listening on ``page``. Calling it again while attached is a no-op."""
        if self._page is not None:
            logger.warning("Recorder already attached")
            return

        script = build_recorder_script(BINDING_NAME, self.label_radius_px)
        await page.add_binding(BINDING_NAME, self._on_binding)
        try:
            self._script_id = await page.add_init_script(script)
            await page.evaluate(script)
        except Exception:
            await self._unwind(page)
            raise
        self._page = page
        logger.info(f"Recording started for {self.session.target_url}")

    async def detach(self) -> None:
        """Stop listening. Safe to call repeatedly."""
        page = self._page
        if page is None:
            return
        self._page = None

        if self._script_id:
            await page.remove_init_script(self._script_id)
            self._script_id = None
        try:
            await page.evaluate(DISPOSE_JS)
        except Exception as e:
            # Page may be mid-navigation or already closed
            logger.debug(f"Recorder dispose failed: {e}")
        await page.remove_binding(BINDING_NAME)
        logger.info(f"Recording stopped with {len(self.session.steps)} raw steps")

    async def _unwind(self, page: "Page") -> None:
        script_id, self._script_id = self._script_id, None
        try:
            if script_id:
                await page.remove_init_script(script_id)
        finally:
            await page.remove_binding(BINDING_NAME)

    def _on_binding(self, payload: str) -> None:
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.debug(f"Ignoring malformed recorder payload: {e}")
            return
        try:
            self.handle_event(event)
        except Exception as e:
            logger.warning(f"Failed to record interaction: {e}")

    def handle_event(self, event: Mapping[str, Any]) -> "InteractionStep | None":
        """Turn one raw page event into a committed step.

        Returns:
            The recorded step, or None if the event was filtered out
        """
        if not self.session.is_active:
            return None

        facts = event.get("facts") or {}
        if facts.get("overlay"):
            logger.debug("Ignoring interaction with recorder controls")
            return None

        step = self._build_step(event, facts)
        if step is None:
            return None

        if isinstance(step, InputStep) and self._is_repeat_input(step):
            logger.debug(f"Debounced repeated input for {step.label}")
            return None

        self.session.add(step)
        logger.info(f"Recorded step {len(self.session.steps)}: {step.describe()}")
        for listener in list(self._listeners):
            try:
                listener(step)
            except Exception as e:
                logger.warning(f"Step listener failed: {e}")
        return step

    def _build_step(self, event: Mapping[str, Any], facts: Mapping[str, Any]) -> "InteractionStep | None":
        kind = event.get("kind")
        common = {
            "target": describe(facts),
            "coordinates": capture_coordinates(facts),
            "field_label": field_label_for(facts),
            "captured_at": float(event.get("capturedAt") or 0.0),
        }
        if kind == "click":
            return ClickStep(**common)

        value = event.get("value")
        if value is None:
            return None
        sensitive = is_sensitive_field(facts)
        value = REDACTED if sensitive and not self.store_sensitive_values else str(value)
        if kind == "input":
            return InputStep(value=value, is_sensitive=sensitive, **common)
        if kind == "select":
            return SelectStep(value=value, is_sensitive=sensitive, **common)

        logger.debug(f"Ignoring unknown interaction kind: {kind!r}")
        return None

    def _is_repeat_input(self, step: InputStep) -> bool:
        key = target_key(step)
        previous = self._last_input.get(key)
        self._last_input[key] = (step.value, step.captured_at)
        if previous is None:
            return False
        previous_value, previous_at = previous
        return previous_value == step.value and 0 <= step.captured_at - previous_at < self.debounce_ms
